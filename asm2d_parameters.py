# asm2d_parameters.py File

import logging
from dataclasses import dataclass, fields, replace

logger = logging.getLogger(__name__)

REFERENCE_TEMPERATURE = 20.0  # deg C, reference for all ASM2d rate constants


class ConfigurationError(ValueError):
    """Invalid plant, influent, parameter or run configuration. Raised before any integration."""


@dataclass(frozen=True)
class StoichiometricParameters:
    """
    ASM2d stoichiometric and composition parameters (Henze et al., 1999, 20 deg C).
    Units follow the model: g COD, g N, g P per g COD unless stated.
    """
    # Yields and fractions
    f_SI: float = 0.0       # Production of S_I in hydrolysis
    Y_H: float = 0.625      # Heterotrophic yield (g COD/g COD)
    f_XI: float = 0.1       # Fraction of inert COD generated in lysis
    Y_PAO: float = 0.625    # PAO yield on PHA (g COD/g COD)
    Y_PO4: float = 0.40     # PP requirement (P release) per PHA stored (g P/g COD)
    Y_PHA: float = 0.20     # PHA requirement for PP storage (g COD/g P)
    Y_A: float = 0.24       # Autotrophic yield (g COD/g N)

    # Nitrogen content
    i_NSI: float = 0.01
    i_NSF: float = 0.03
    i_NXI: float = 0.02
    i_NXS: float = 0.04
    i_NBM: float = 0.07

    # Phosphorus content
    i_PSI: float = 0.0
    i_PSF: float = 0.01
    i_PXI: float = 0.01
    i_PXS: float = 0.01
    i_PBM: float = 0.02

    # Suspended solids conversion (g TSS/g COD)
    i_TSSXI: float = 0.75
    i_TSSXS: float = 0.75
    i_TSSBM: float = 0.90

    # Organic particulate COD per g VSS
    f_COD_VSS: float = 1.42

    def __post_init__(self):
        _check_non_negative(self)
        for name in ('Y_H', 'Y_PAO', 'Y_A'):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise ConfigurationError(f"synthesis yield {name}={value} must lie in (0, 1]")
        if not 0.0 <= self.f_XI < 1.0 or not 0.0 <= self.f_SI < 1.0:
            raise ConfigurationError("f_XI and f_SI must lie in [0, 1)")
        if self.f_COD_VSS <= 0.0:
            raise ConfigurationError("f_COD_VSS must be positive")


@dataclass(frozen=True)
class KineticParameters:
    """
    ASM2d kinetic parameters at the reference temperature (20 deg C).
    Rates per day, half-saturation constants in g/m^3 (S_ALK in mol/m^3,
    ratios in g/g).
    """
    # Hydrolysis of particulate substrate
    k_h: float = 3.0          # Hydrolysis rate constant (1/d)
    eta_NO3_hyd: float = 0.6  # Anoxic hydrolysis reduction factor
    eta_fe: float = 0.4       # Anaerobic hydrolysis reduction factor
    K_O2_hyd: float = 0.2     # O2 saturation/inhibition for hydrolysis
    K_NO3_hyd: float = 0.5    # NO3 saturation/inhibition for hydrolysis
    K_X: float = 0.1          # X_S/X_H saturation for hydrolysis

    # Heterotrophic organisms X_H
    mu_H: float = 6.0         # Max growth rate on substrate (1/d)
    q_fe: float = 3.0         # Max fermentation rate (1/d)
    eta_NO3_H: float = 0.8    # Anoxic growth reduction factor
    b_H: float = 0.4          # Lysis rate (1/d)
    K_O2_H: float = 0.2       # O2 saturation/inhibition
    K_F: float = 4.0          # S_F saturation for growth
    K_fe: float = 4.0         # S_F saturation for fermentation
    K_A_H: float = 4.0        # S_A saturation for growth
    K_NO3_H: float = 0.5      # NO3 saturation/inhibition
    K_NH4_H: float = 0.05     # NH4 nutrient saturation
    K_P_H: float = 0.01       # PO4 nutrient saturation
    K_ALK_H: float = 0.1      # Alkalinity saturation (mol/m^3)

    # Phosphorus accumulating organisms X_PAO
    q_PHA: float = 3.0        # PHA storage rate (1/d)
    q_PP: float = 1.5         # PP storage rate (1/d)
    mu_PAO: float = 1.0       # Max growth rate (1/d)
    eta_NO3_PAO: float = 0.6  # Anoxic (denitrifying PAO) reduction factor
    b_PAO: float = 0.2        # Lysis of X_PAO (1/d)
    b_PP: float = 0.2         # Lysis of X_PP (1/d)
    b_PHA: float = 0.2        # Lysis of X_PHA (1/d)
    K_O2_PAO: float = 0.2
    K_NO3_PAO: float = 0.5
    K_A_PAO: float = 4.0
    K_NH4_PAO: float = 0.05
    K_PS: float = 0.2         # PO4 saturation for PP storage
    K_P_PAO: float = 0.01     # PO4 nutrient saturation for growth
    K_ALK_PAO: float = 0.1
    K_PP: float = 0.01        # X_PP/X_PAO saturation for PHA storage
    K_MAX: float = 0.34       # Maximum X_PP/X_PAO ratio
    K_IPP: float = 0.02       # Inhibition of PP storage near K_MAX
    K_PHA: float = 0.01       # X_PHA/X_PAO saturation

    # Autotrophic (nitrifying) organisms X_AUT
    mu_AUT: float = 1.0       # Max growth rate (1/d)
    b_AUT: float = 0.15       # Decay rate (1/d)
    K_O2_AUT: float = 0.5
    K_NH4_AUT: float = 1.0
    K_ALK_AUT: float = 0.5
    K_P_AUT: float = 0.01

    # Simultaneous precipitation of phosphorus with ferric hydroxide
    k_PRE: float = 1.0        # Precipitation rate (m^3/(g Fe(OH)3 d))
    k_RED: float = 0.6        # Redissolution rate (1/d)
    K_ALK_PRE: float = 0.5

    def __post_init__(self):
        _check_non_negative(self)
        for f in fields(self):
            if f.name.startswith('K_') and getattr(self, f.name) <= 0.0:
                raise ConfigurationError(f"half-saturation constant {f.name} must be positive")
        for name in ('eta_NO3_hyd', 'eta_fe', 'eta_NO3_H', 'eta_NO3_PAO'):
            if getattr(self, name) > 1.0:
                raise ConfigurationError(f"reduction factor {name} must not exceed 1")


@dataclass(frozen=True)
class TemperatureCoefficients:
    """Arrhenius-type coefficients theta, k(T) = k(20) * theta**(T - 20)."""
    mu_H: float = 1.072
    b_H: float = 1.029
    q_fe: float = 1.029
    k_h: float = 1.041
    q_PHA: float = 1.041
    q_PP: float = 1.041
    mu_PAO: float = 1.041
    b_PAO: float = 1.029
    b_PP: float = 1.029
    b_PHA: float = 1.029
    mu_AUT: float = 1.103
    b_AUT: float = 1.029
    k_PRE: float = 1.0
    k_RED: float = 1.0

    def __post_init__(self):
        for f in fields(self):
            if getattr(self, f.name) <= 0.0:
                raise ConfigurationError(f"temperature coefficient {f.name} must be positive")

    @classmethod
    def neutral(cls):
        """All coefficients 1.0 (no temperature dependence)."""
        return cls(**{f.name: 1.0 for f in fields(cls)})


def _check_non_negative(params):
    for f in fields(params):
        value = getattr(params, f.name)
        if not value >= 0.0:  # also catches NaN
            raise ConfigurationError(f"{type(params).__name__}.{f.name}={value} must be non-negative")


def get_asm2d_params():
    """
    Returns the default ASM2d parameter sets at the reference temperature.

    Returns:
        tuple: (StoichiometricParameters, KineticParameters, TemperatureCoefficients)
    """
    return StoichiometricParameters(), KineticParameters(), TemperatureCoefficients()


def correct_temperature(kinetic, temperature, coefficients=None, reference_temperature=REFERENCE_TEMPERATURE):
    """
    Rescales the temperature-dependent rate constants of a KineticParameters
    record to the operating temperature.

    Args:
        kinetic (KineticParameters): Parameters defined at the reference temperature.
        temperature (float): Operating temperature (deg C).
        coefficients (TemperatureCoefficients): theta per rate constant; defaults used if None.
        reference_temperature (float): Temperature at which `kinetic` is defined.

    Returns:
        KineticParameters: A new record; `kinetic` itself is left untouched.
    """
    if coefficients is None:
        coefficients = TemperatureCoefficients()
    dT = float(temperature) - float(reference_temperature)
    logger.debug("Correcting kinetic rates from %.1f to %.1f deg C", reference_temperature, temperature)
    corrected = {
        f.name: getattr(kinetic, f.name) * getattr(coefficients, f.name) ** dT
        for f in fields(coefficients)
    }
    return replace(kinetic, **corrected)


def dissolved_oxygen_saturation(temperature):
    """Saturation DO in clean water at 1 atm (g O2/m^3), valid roughly 0-40 deg C."""
    T = float(temperature)
    return 14.652 - 0.41022 * T + 0.007991 * T**2 - 0.000077774 * T**3
