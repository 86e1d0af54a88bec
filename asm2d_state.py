# asm2d_state.py File

from dataclasses import dataclass, fields, astuple

import numpy as np

COMPONENTS = ['S_O2', 'S_F', 'S_A', 'S_NH4', 'S_NO3', 'S_PO4', 'S_I', 'S_ALK', 'S_N2',
              'X_I', 'X_S', 'X_H', 'X_PAO', 'X_PP', 'X_PHA', 'X_AUT', 'X_MeOH', 'X_MeP']
N_COMPONENTS = len(COMPONENTS)
IDX = {name: i for i, name in enumerate(COMPONENTS)}

# indices [9..17] are the particulates; the clarifier separates these
particulate_idx = list(range(9, 18))
organic_cod_idx = [IDX[c] for c in ('S_F', 'S_A', 'S_I', 'X_I', 'X_S', 'X_H', 'X_PAO', 'X_PHA', 'X_AUT')]
biomass_idx = [IDX['X_H'], IDX['X_PAO'], IDX['X_AUT']]

# Fixed composition of the non-parameterised pools
COD_PER_N_NO3 = -64.0 / 14.0      # g COD/g N, nitrate as electron acceptor
COD_PER_N_N2 = -24.0 / 14.0       # g COD/g N
P_CONTENT_MeP = 0.205             # g P/g X_MeP (FePO4)
TSS_PER_PHA = 0.60
TSS_PER_PP = 3.23
BOD5_FACTOR = 0.25                # short-term BOD per biodegradable COD (BSM convention)


@dataclass(frozen=True)
class StateVector:
    """
    Concentrations of the 18 ASM2d state variables of one reactor zone (g/m^3,
    S_ALK in mol HCO3/m^3). Field order is COMPONENTS.
    """
    S_O2: float = 0.0    # Dissolved oxygen (g O2/m^3)
    S_F: float = 0.0     # Fermentable, readily biodegradable substrate (g COD/m^3)
    S_A: float = 0.0     # Fermentation products, acetate (g COD/m^3)
    S_NH4: float = 0.0   # Ammonium plus ammonia nitrogen (g N/m^3)
    S_NO3: float = 0.0   # Nitrate plus nitrite nitrogen (g N/m^3)
    S_PO4: float = 0.0   # Inorganic soluble phosphorus (g P/m^3)
    S_I: float = 0.0     # Inert soluble organic material (g COD/m^3)
    S_ALK: float = 0.0   # Alkalinity (mol HCO3/m^3)
    S_N2: float = 0.0    # Dinitrogen from denitrification (g N/m^3)
    X_I: float = 0.0     # Inert particulate organic material (g COD/m^3)
    X_S: float = 0.0     # Slowly biodegradable substrate (g COD/m^3)
    X_H: float = 0.0     # Heterotrophic organisms (g COD/m^3)
    X_PAO: float = 0.0   # Phosphate-accumulating organisms (g COD/m^3)
    X_PP: float = 0.0    # Poly-phosphate (g P/m^3)
    X_PHA: float = 0.0   # Cell internal storage product of PAO (g COD/m^3)
    X_AUT: float = 0.0   # Nitrifying organisms (g COD/m^3)
    X_MeOH: float = 0.0  # Metal hydroxides (g TSS/m^3)
    X_MeP: float = 0.0   # Metal phosphate (g TSS/m^3)

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if not (np.isfinite(value) and value >= 0.0):
                raise ValueError(f"state variable {f.name}={value} must be finite and non-negative")

    def as_array(self):
        return np.array(astuple(self), dtype=float)

    def as_dict(self):
        return dict(zip(COMPONENTS, astuple(self)))

    @classmethod
    def from_array(cls, values):
        """Build from an (18,) array; negatives are clamped to zero."""
        x = np.asarray(values, dtype=float).reshape(N_COMPONENTS)
        return cls(*(float(v) for v in np.maximum(x, 0.0)))

    @classmethod
    def from_dict(cls, values):
        unknown = set(values) - set(COMPONENTS)
        if unknown:
            raise ValueError(f"unknown state variables: {sorted(unknown)}")
        return cls(**{k: float(v) for k, v in values.items()})


def default_initial_state():
    """
    Generic mixed-liquor state used to start a run when no carried-over
    state is given. Roughly a mature EBPR sludge at ~3500 g TSS/m^3.
    """
    return StateVector(
        S_O2=2.0, S_F=5.0, S_A=2.0, S_NH4=5.0, S_NO3=5.0, S_PO4=5.0, S_I=20.0,
        S_ALK=5.0, S_N2=10.0,
        X_I=1000.0, X_S=100.0, X_H=1500.0, X_PAO=300.0, X_PP=60.0, X_PHA=20.0,
        X_AUT=80.0, X_MeOH=0.0, X_MeP=0.0,
    )


# --- Conventional indices from model states ---
# All functions accept a single (18,) array or a stack (..., 18) and return
# floats or arrays accordingly.

def total_cod(x):
    x = np.asarray(x, float)
    return x[..., organic_cod_idx].sum(axis=-1)


def soluble_cod(x):
    x = np.asarray(x, float)
    return x[..., IDX['S_F']] + x[..., IDX['S_A']] + x[..., IDX['S_I']]


def bod5(x, stoich):
    x = np.asarray(x, float)
    biodegradable = x[..., IDX['S_F']] + x[..., IDX['S_A']] + x[..., IDX['X_S']] + x[..., IDX['X_PHA']]
    biomass = x[..., biomass_idx].sum(axis=-1)
    return BOD5_FACTOR * (biodegradable + (1.0 - stoich.f_XI) * biomass)


def total_suspended_solids(x, stoich):
    x = np.asarray(x, float)
    return (stoich.i_TSSXI * x[..., IDX['X_I']]
            + stoich.i_TSSXS * x[..., IDX['X_S']]
            + stoich.i_TSSBM * x[..., biomass_idx].sum(axis=-1)
            + TSS_PER_PHA * x[..., IDX['X_PHA']]
            + TSS_PER_PP * x[..., IDX['X_PP']]
            + x[..., IDX['X_MeOH']] + x[..., IDX['X_MeP']])


def volatile_suspended_solids(x, stoich):
    x = np.asarray(x, float)
    organic = sum(x[..., IDX[c]] for c in ('X_I', 'X_S', 'X_H', 'X_PAO', 'X_PHA', 'X_AUT'))
    return organic / stoich.f_COD_VSS


def total_kjeldahl_nitrogen(x, stoich):
    x = np.asarray(x, float)
    return (x[..., IDX['S_NH4']]
            + stoich.i_NSF * x[..., IDX['S_F']]
            + stoich.i_NSI * x[..., IDX['S_I']]
            + stoich.i_NXI * x[..., IDX['X_I']]
            + stoich.i_NXS * x[..., IDX['X_S']]
            + stoich.i_NBM * x[..., biomass_idx].sum(axis=-1))


def total_nitrogen(x, stoich):
    x = np.asarray(x, float)
    return total_kjeldahl_nitrogen(x, stoich) + x[..., IDX['S_NO3']]


def total_phosphorus(x, stoich):
    x = np.asarray(x, float)
    return (x[..., IDX['S_PO4']]
            + x[..., IDX['X_PP']]
            + stoich.i_PSF * x[..., IDX['S_F']]
            + stoich.i_PSI * x[..., IDX['S_I']]
            + stoich.i_PXI * x[..., IDX['X_I']]
            + stoich.i_PXS * x[..., IDX['X_S']]
            + stoich.i_PBM * x[..., biomass_idx].sum(axis=-1)
            + P_CONTENT_MeP * x[..., IDX['X_MeP']])


def composition_matrix(stoich):
    """
    Continuity table used to close the stoichiometric matrix.

    Returns:
        dict: 'COD', 'N', 'P', 'charge' -> (18,) arrays of content per unit of each component.
        Charge is in mol per g (S_ALK per mol).
    """
    cod = np.zeros(N_COMPONENTS)
    for c in ('S_F', 'S_A', 'S_I', 'X_I', 'X_S', 'X_H', 'X_PAO', 'X_PHA', 'X_AUT'):
        cod[IDX[c]] = 1.0
    cod[IDX['S_O2']] = -1.0
    cod[IDX['S_NO3']] = COD_PER_N_NO3
    cod[IDX['S_N2']] = COD_PER_N_N2

    nitrogen = np.zeros(N_COMPONENTS)
    nitrogen[IDX['S_NH4']] = 1.0
    nitrogen[IDX['S_NO3']] = 1.0
    nitrogen[IDX['S_N2']] = 1.0
    nitrogen[IDX['S_F']] = stoich.i_NSF
    nitrogen[IDX['S_I']] = stoich.i_NSI
    nitrogen[IDX['X_I']] = stoich.i_NXI
    nitrogen[IDX['X_S']] = stoich.i_NXS
    nitrogen[biomass_idx] = stoich.i_NBM

    phosphorus = np.zeros(N_COMPONENTS)
    phosphorus[IDX['S_PO4']] = 1.0
    phosphorus[IDX['X_PP']] = 1.0
    phosphorus[IDX['S_F']] = stoich.i_PSF
    phosphorus[IDX['S_I']] = stoich.i_PSI
    phosphorus[IDX['X_I']] = stoich.i_PXI
    phosphorus[IDX['X_S']] = stoich.i_PXS
    phosphorus[biomass_idx] = stoich.i_PBM
    phosphorus[IDX['X_MeP']] = P_CONTENT_MeP

    charge = np.zeros(N_COMPONENTS)
    charge[IDX['S_A']] = -1.0 / 64.0
    charge[IDX['S_NH4']] = 1.0 / 14.0
    charge[IDX['S_NO3']] = -1.0 / 14.0
    charge[IDX['S_PO4']] = -1.5 / 31.0
    charge[IDX['S_ALK']] = -1.0
    charge[IDX['X_PP']] = -1.0 / 31.0

    return {'COD': cod, 'N': nitrogen, 'P': phosphorus, 'charge': charge}
