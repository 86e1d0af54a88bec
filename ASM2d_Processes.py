# ASM2d_Processes.py File

from dataclasses import dataclass

import numpy as np

from asm2d_parameters import StoichiometricParameters
from asm2d_state import COMPONENTS, IDX, N_COMPONENTS, P_CONTENT_MeP, composition_matrix

# Switching function kinds
MONOD = 'monod'            # S / (S + K)
INHIBITION = 'inhibition'  # K / (K + S)
LINEAR = 'linear'          # S

# Process families used for zone gating
AEROBIC = 'aerobic'        # requires an aerated zone
ANOXIC = 'anoxic'          # requires nitrate respiration capability (anoxic or aerobic zone)
ANOXIC_PAO = 'anoxic_pao'  # anoxic family, additionally requires denitrifying PAO activity
ANY = 'any'                # anaerobic processes and lysis, always permitted
CHEMICAL = 'chemical'      # chemical phosphorus precipitation, only when enabled

# Derived signals appended after the 18 concentrations
DERIVED_SIGNALS = ['X_S/X_H', 'X_PP/X_PAO', 'X_PHA/X_PAO', 'PP_headroom', 'S_F_share', 'S_A_share']
SIGNALS = COMPONENTS + DERIVED_SIGNALS
SIGNAL_IDX = {name: i for i, name in enumerate(SIGNALS)}


@dataclass(frozen=True)
class Term:
    signal: str
    kind: str
    constant: str = None   # name of the KineticParameters field; unused for LINEAR


@dataclass(frozen=True)
class Process:
    name: str
    rate: str              # maximum rate constant (KineticParameters field)
    terms: tuple
    catalyst: str          # pool the rate is proportional to
    family: str
    efficiency: str = None  # optional reduction factor (KineticParameters field)


def _m(signal, constant):
    return Term(signal, MONOD, constant)


def _i(signal, constant):
    return Term(signal, INHIBITION, constant)


# --- Declarative ASM2d process-rate table (Henze et al., 1999) ---
PROCESS_TABLE = (
    # Hydrolysis of X_S
    Process('aerobic_hydrolysis', 'k_h',
            (_m('S_O2', 'K_O2_hyd'), _m('X_S/X_H', 'K_X')), 'X_H', AEROBIC),
    Process('anoxic_hydrolysis', 'k_h',
            (_i('S_O2', 'K_O2_hyd'), _m('S_NO3', 'K_NO3_hyd'), _m('X_S/X_H', 'K_X')), 'X_H', ANOXIC,
            efficiency='eta_NO3_hyd'),
    Process('anaerobic_hydrolysis', 'k_h',
            (_i('S_O2', 'K_O2_hyd'), _i('S_NO3', 'K_NO3_hyd'), _m('X_S/X_H', 'K_X')), 'X_H', ANY,
            efficiency='eta_fe'),

    # Heterotrophic organisms
    Process('aerobic_growth_H_on_SF', 'mu_H',
            (_m('S_O2', 'K_O2_H'), _m('S_F', 'K_F'), Term('S_F_share', LINEAR),
             _m('S_NH4', 'K_NH4_H'), _m('S_PO4', 'K_P_H'), _m('S_ALK', 'K_ALK_H')), 'X_H', AEROBIC),
    Process('aerobic_growth_H_on_SA', 'mu_H',
            (_m('S_O2', 'K_O2_H'), _m('S_A', 'K_A_H'), Term('S_A_share', LINEAR),
             _m('S_NH4', 'K_NH4_H'), _m('S_PO4', 'K_P_H'), _m('S_ALK', 'K_ALK_H')), 'X_H', AEROBIC),
    Process('anoxic_growth_H_on_SF', 'mu_H',
            (_i('S_O2', 'K_O2_H'), _m('S_NO3', 'K_NO3_H'), _m('S_F', 'K_F'), Term('S_F_share', LINEAR),
             _m('S_NH4', 'K_NH4_H'), _m('S_PO4', 'K_P_H'), _m('S_ALK', 'K_ALK_H')), 'X_H', ANOXIC,
            efficiency='eta_NO3_H'),
    Process('anoxic_growth_H_on_SA', 'mu_H',
            (_i('S_O2', 'K_O2_H'), _m('S_NO3', 'K_NO3_H'), _m('S_A', 'K_A_H'), Term('S_A_share', LINEAR),
             _m('S_NH4', 'K_NH4_H'), _m('S_PO4', 'K_P_H'), _m('S_ALK', 'K_ALK_H')), 'X_H', ANOXIC,
            efficiency='eta_NO3_H'),
    Process('fermentation', 'q_fe',
            (_i('S_O2', 'K_O2_H'), _i('S_NO3', 'K_NO3_H'), _m('S_F', 'K_fe'), _m('S_ALK', 'K_ALK_H')),
            'X_H', ANY),
    Process('lysis_H', 'b_H', (), 'X_H', ANY),

    # Phosphorus accumulating organisms
    Process('storage_PHA', 'q_PHA',
            (_m('S_A', 'K_A_PAO'), _m('S_ALK', 'K_ALK_PAO'), _m('X_PP/X_PAO', 'K_PP')), 'X_PAO', ANY),
    Process('aerobic_storage_PP', 'q_PP',
            (_m('S_O2', 'K_O2_PAO'), _m('S_PO4', 'K_PS'), _m('S_ALK', 'K_ALK_PAO'),
             _m('X_PHA/X_PAO', 'K_PHA'), _m('PP_headroom', 'K_IPP')), 'X_PAO', AEROBIC),
    Process('anoxic_storage_PP', 'q_PP',
            (_i('S_O2', 'K_O2_PAO'), _m('S_NO3', 'K_NO3_PAO'), _m('S_PO4', 'K_PS'), _m('S_ALK', 'K_ALK_PAO'),
             _m('X_PHA/X_PAO', 'K_PHA'), _m('PP_headroom', 'K_IPP')), 'X_PAO', ANOXIC_PAO,
            efficiency='eta_NO3_PAO'),
    Process('aerobic_growth_PAO', 'mu_PAO',
            (_m('S_O2', 'K_O2_PAO'), _m('S_NH4', 'K_NH4_PAO'), _m('S_PO4', 'K_P_PAO'),
             _m('S_ALK', 'K_ALK_PAO'), _m('X_PHA/X_PAO', 'K_PHA')), 'X_PAO', AEROBIC),
    Process('anoxic_growth_PAO', 'mu_PAO',
            (_i('S_O2', 'K_O2_PAO'), _m('S_NO3', 'K_NO3_PAO'), _m('S_NH4', 'K_NH4_PAO'),
             _m('S_PO4', 'K_P_PAO'), _m('S_ALK', 'K_ALK_PAO'), _m('X_PHA/X_PAO', 'K_PHA')), 'X_PAO', ANOXIC_PAO,
            efficiency='eta_NO3_PAO'),
    Process('lysis_PAO', 'b_PAO', (_m('S_ALK', 'K_ALK_PAO'),), 'X_PAO', ANY),
    Process('lysis_PP', 'b_PP', (_m('S_ALK', 'K_ALK_PAO'),), 'X_PP', ANY),
    Process('lysis_PHA', 'b_PHA', (_m('S_ALK', 'K_ALK_PAO'),), 'X_PHA', ANY),

    # Nitrifying organisms
    Process('aerobic_growth_AUT', 'mu_AUT',
            (_m('S_O2', 'K_O2_AUT'), _m('S_NH4', 'K_NH4_AUT'), _m('S_PO4', 'K_P_AUT'), _m('S_ALK', 'K_ALK_AUT')),
            'X_AUT', AEROBIC),
    Process('lysis_AUT', 'b_AUT', (), 'X_AUT', ANY),

    # Simultaneous chemical precipitation of phosphate
    Process('precipitation', 'k_PRE', (Term('S_PO4', LINEAR),), 'X_MeOH', CHEMICAL),
    Process('redissolution', 'k_RED', (_m('S_ALK', 'K_ALK_PRE'),), 'X_MeP', CHEMICAL),
)

PROCESS_NAMES = [p.name for p in PROCESS_TABLE]
N_PROCESSES = len(PROCESS_TABLE)
PIDX = {name: j for j, name in enumerate(PROCESS_NAMES)}

# Electron acceptor used to close the COD balance of each process
_COD_ACCEPTOR = {
    'aerobic_growth_H_on_SF': 'S_O2', 'aerobic_growth_H_on_SA': 'S_O2',
    'aerobic_storage_PP': 'S_O2', 'aerobic_growth_PAO': 'S_O2', 'aerobic_growth_AUT': 'S_O2',
    'anoxic_growth_H_on_SF': 'S_NO3', 'anoxic_growth_H_on_SA': 'S_NO3',
    'anoxic_storage_PP': 'S_NO3', 'anoxic_growth_PAO': 'S_NO3',
}

MeOH_PER_PRECIPITATE = 3.45  # g X_MeOH consumed per 4.87 g X_MeP formed


def _known_coefficients(name, s):
    """Stoichiometric coefficients fixed by the model; the rest follow from continuity."""
    lysis_products = {'X_I': s.f_XI, 'X_S': 1.0 - s.f_XI}
    hydrolysis = {'X_S': -1.0, 'S_F': 1.0 - s.f_SI, 'S_I': s.f_SI}
    known = {
        'aerobic_hydrolysis': hydrolysis,
        'anoxic_hydrolysis': hydrolysis,
        'anaerobic_hydrolysis': hydrolysis,
        'aerobic_growth_H_on_SF': {'S_F': -1.0 / s.Y_H, 'X_H': 1.0},
        'aerobic_growth_H_on_SA': {'S_A': -1.0 / s.Y_H, 'X_H': 1.0},
        'anoxic_growth_H_on_SF': {'S_F': -1.0 / s.Y_H, 'X_H': 1.0},
        'anoxic_growth_H_on_SA': {'S_A': -1.0 / s.Y_H, 'X_H': 1.0},
        'fermentation': {'S_F': -1.0, 'S_A': 1.0},
        'lysis_H': dict(lysis_products, X_H=-1.0),
        'storage_PHA': {'S_A': -1.0, 'X_PHA': 1.0, 'X_PP': -s.Y_PO4},
        'aerobic_storage_PP': {'X_PHA': -s.Y_PHA, 'X_PP': 1.0},
        'anoxic_storage_PP': {'X_PHA': -s.Y_PHA, 'X_PP': 1.0},
        'aerobic_growth_PAO': {'X_PHA': -1.0 / s.Y_PAO, 'X_PAO': 1.0},
        'anoxic_growth_PAO': {'X_PHA': -1.0 / s.Y_PAO, 'X_PAO': 1.0},
        'lysis_PAO': dict(lysis_products, X_PAO=-1.0),
        'lysis_PP': {'X_PP': -1.0},
        'lysis_PHA': {'X_PHA': -1.0, 'S_A': 1.0},
        'aerobic_growth_AUT': {'S_NO3': 1.0 / s.Y_A, 'X_AUT': 1.0},
        'lysis_AUT': dict(lysis_products, X_AUT=-1.0),
        'precipitation': {'X_MeOH': -MeOH_PER_PRECIPITATE, 'X_MeP': 1.0 / P_CONTENT_MeP},
        'redissolution': {'X_MeOH': MeOH_PER_PRECIPITATE, 'X_MeP': -1.0 / P_CONTENT_MeP},
    }
    return known[name]


def build_stoichiometric_matrix(stoich_params):
    """
    Builds the ASM2d stoichiometric matrix.

    The coefficients of S_NH4, S_PO4 and S_ALK are obtained from nitrogen,
    phosphorus and charge continuity; the electron acceptor (S_O2, or S_NO3
    with the matching S_N2) closes the COD balance.

    Args:
        stoich_params (StoichiometricParameters): yields and composition.

    Returns:
        np.ndarray: (21, 18) matrix, rows in PROCESS_TABLE order, columns in COMPONENTS order.
    """
    comp = composition_matrix(stoich_params)
    nu = np.zeros((N_PROCESSES, N_COMPONENTS))

    for j, process in enumerate(PROCESS_TABLE):
        for component, coef in _known_coefficients(process.name, stoich_params).items():
            nu[j, IDX[component]] = coef

        # --- COD continuity through the electron acceptor ---
        acceptor = _COD_ACCEPTOR.get(process.name)
        residual = nu[j] @ comp['COD']
        if acceptor == 'S_O2':
            nu[j, IDX['S_O2']] = residual  # COD content of S_O2 is -1
        elif acceptor == 'S_NO3':
            # NO3 -> N2 carries 40/14 g COD per g N
            reduced = residual / (comp['COD'][IDX['S_NO3']] - comp['COD'][IDX['S_N2']])
            nu[j, IDX['S_NO3']] = -reduced
            nu[j, IDX['S_N2']] = reduced

        # --- N, P and charge continuity ---
        nu[j, IDX['S_NH4']] = -(nu[j] @ comp['N'])
        nu[j, IDX['S_PO4']] = -(nu[j] @ comp['P'])
        nu[j, IDX['S_ALK']] = nu[j] @ comp['charge']  # charge of S_ALK is -1 per mol

    return nu


def zone_gates(zone_types, enable_dpao=True, enable_chem_p=False):
    """
    Hard 0/1 process multipliers per zone.

    Args:
        zone_types (sequence of str): 'anaerobic', 'anoxic' or 'aerobic' per zone.
        enable_dpao (bool): allow anoxic PP storage and PAO growth on nitrate.
        enable_chem_p (bool): allow metal phosphate precipitation/redissolution.

    Returns:
        np.ndarray: (n_zones, 21) array of 0.0/1.0.
    """
    families = np.array([p.family for p in PROCESS_TABLE])
    gates = np.zeros((len(zone_types), N_PROCESSES))
    for z, zone_type in enumerate(zone_types):
        zone_type = str(getattr(zone_type, 'value', zone_type))
        if zone_type not in ('anaerobic', 'anoxic', 'aerobic'):
            raise ValueError(f"unknown zone type {zone_type!r}")
        allowed = {ANY}
        if zone_type in ('anoxic', 'aerobic'):
            allowed.add(ANOXIC)
            if enable_dpao:
                allowed.add(ANOXIC_PAO)
        if zone_type == 'aerobic':
            allowed.add(AEROBIC)
        if enable_chem_p:
            allowed.add(CHEMICAL)
        gates[z] = np.isin(families, list(allowed)).astype(float)
    return gates


class ProcessRateModel:
    """
    Vectorised evaluation of the process-rate table for a stack of zones.

    The table is compiled once into arrays: unique switching terms, the term
    slots of every process (padded with a constant 1), the catalyst column and
    the effective rate constant of every process.
    """

    def __init__(self, kinetic_params, stoich_params):
        self.kinetic = kinetic_params
        self.stoich = stoich_params
        self.stoichiometric_matrix = build_stoichiometric_matrix(stoich_params)

        self.k_max = np.array([
            getattr(kinetic_params, p.rate) * (getattr(kinetic_params, p.efficiency) if p.efficiency else 1.0)
            for p in PROCESS_TABLE
        ])
        self.catalyst_idx = np.array([IDX[p.catalyst] for p in PROCESS_TABLE])

        unique_terms = []
        for p in PROCESS_TABLE:
            for term in p.terms:
                if term not in unique_terms:
                    unique_terms.append(term)
        self.terms = unique_terms
        self.term_signal_idx = np.array([SIGNAL_IDX[t.signal] for t in unique_terms])
        self.term_K = np.array([getattr(kinetic_params, t.constant) if t.kind != LINEAR else 1.0
                                for t in unique_terms])
        self.term_is_inhibition = np.array([t.kind == INHIBITION for t in unique_terms])
        self.term_is_linear = np.array([t.kind == LINEAR for t in unique_terms])
        width = max(len(p.terms) for p in PROCESS_TABLE)
        # slot len(unique_terms) points at the constant-1 column appended in rates()
        self.term_slots = np.full((N_PROCESSES, width), len(unique_terms))
        for j, p in enumerate(PROCESS_TABLE):
            self.term_slots[j, :len(p.terms)] = [unique_terms.index(t) for t in p.terms]

    def signals(self, states):
        """(n_zones, 18) concentrations -> (n_zones, n_signals), negatives treated as zero."""
        C = np.maximum(np.atleast_2d(np.asarray(states, float)), 0.0)
        eps = 1e-12
        X_H, X_PAO = C[:, IDX['X_H']], C[:, IDX['X_PAO']]
        S_F, S_A = C[:, IDX['S_F']], C[:, IDX['S_A']]
        pp_ratio = C[:, IDX['X_PP']] / np.maximum(X_PAO, eps)
        substrate = np.maximum(S_F + S_A, eps)
        derived = np.column_stack([
            C[:, IDX['X_S']] / np.maximum(X_H, eps),
            pp_ratio,
            C[:, IDX['X_PHA']] / np.maximum(X_PAO, eps),
            np.maximum(self.kinetic.K_MAX - pp_ratio, 0.0),
            S_F / substrate,
            S_A / substrate,
        ])
        return np.hstack([C, derived])

    def rates(self, states, gates):
        """
        Process rates for every zone.

        Args:
            states: (n_zones, 18) concentrations.
            gates: (n_zones, 21) zone gating multipliers from zone_gates().

        Returns:
            np.ndarray: (n_zones, 21) rates (g/m^3/d of the catalyst basis).
        """
        sig = self.signals(states)
        S = sig[:, self.term_signal_idx]
        K = self.term_K
        T = np.where(self.term_is_linear, S, np.where(self.term_is_inhibition, K / (K + S), S / (S + K)))
        T = np.hstack([T, np.ones((len(T), 1))])
        switching = T[:, self.term_slots].prod(axis=2)
        catalyst = sig[:, self.catalyst_idx]
        return self.k_max[None, :] * switching * catalyst * gates

    def reaction_rates(self, states, gates):
        """Net conversion rate of every state variable, (n_zones, 18) g/m^3/d."""
        return self.rates(states, gates) @ self.stoichiometric_matrix


def calculate_process_rates(state, Kin_params, stoich_params=None, zone_type='aerobic',
                            enable_dpao=True, enable_chem_p=False):
    """
    Calculates the 21 ASM2d process rates for a single zone.

    Args:
        state (StateVector, dict or array): current concentrations of the 18 state variables.
        Kin_params (KineticParameters): temperature-corrected kinetic parameters.
        stoich_params (StoichiometricParameters): only needed for the stoichiometric matrix;
                        defaults are used if None.
        zone_type (str): 'anaerobic', 'anoxic' or 'aerobic'.

    Returns:
        dict: process name -> rate.
    """
    if hasattr(state, 'as_array'):
        x = state.as_array()
    elif isinstance(state, dict):
        x = np.array([state[c] for c in COMPONENTS], dtype=float)
    else:
        x = np.asarray(state, dtype=float)
    model = ProcessRateModel(Kin_params, stoich_params or StoichiometricParameters())
    gates = zone_gates([zone_type], enable_dpao, enable_chem_p)
    rho = model.rates(x.reshape(1, N_COMPONENTS), gates)[0]
    return dict(zip(PROCESS_NAMES, rho))
