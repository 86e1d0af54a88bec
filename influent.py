# influent.py File

import logging
from dataclasses import dataclass, fields

import numpy as np
import pandas as pd
from scipy.interpolate import interp1d

from asm2d_parameters import ConfigurationError, StoichiometricParameters
from asm2d_state import StateVector

logger = logging.getLogger(__name__)

ALKALINITY_PER_MOL = 50.0  # g CaCO3 per mol HCO3 (equivalent weight)


@dataclass(frozen=True)
class InfluentDescriptor:
    """
    Raw wastewater characterised by conventional indices (g/m^3 = mg/L,
    alkalinity as mg CaCO3/L, flow in m^3/d). Optional fields left as None
    are estimated from the COD fractionation.
    """
    flow: float
    cod: float
    nh4: float
    tp: float
    bod5: float = None
    tss: float = None
    vss: float = None
    tkn: float = None
    po4: float = None
    vfa: float = None
    nitrate: float = 0.0
    alkalinity: float = 250.0

    def __post_init__(self):
        if not self.flow > 0.0:
            raise ConfigurationError(f"influent flow must be positive, got {self.flow}")
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None and not value >= 0.0:
                raise ConfigurationError(f"influent {f.name}={value} must be non-negative")
        if self.vfa is not None and self.vfa > self.cod:
            raise ConfigurationError("influent VFA cannot exceed total COD")
        if self.tkn is not None and self.tkn < self.nh4:
            raise ConfigurationError("influent TKN cannot be lower than ammonia")
        if self.po4 is not None and self.po4 > self.tp:
            raise ConfigurationError("influent orthophosphate cannot exceed total phosphorus")


@dataclass(frozen=True)
class CODFractions:
    """Split of influent total COD into ASM2d pools (must sum to 1)."""
    S_I: float = 0.05
    S_F: float = 0.15
    S_A: float = 0.05
    X_I: float = 0.13
    X_S: float = 0.62

    def __post_init__(self):
        values = [getattr(self, f.name) for f in fields(self)]
        if any(v < 0.0 for v in values):
            raise ConfigurationError("COD fractions must be non-negative")
        if abs(sum(values) - 1.0) > 1e-6:
            raise ConfigurationError(f"COD fractions must sum to 1, got {sum(values):.4f}")


def fractionate_influent(influent, fractions=None, stoich_params=None):
    """
    Converts an InfluentDescriptor into an ASM2d state vector.

    When VFA is measured it sets S_A directly; S_F keeps its fraction and X_S
    takes the remaining biodegradable COD. Orthophosphate is whatever part of
    total P is not bound in the organic pools.

    Args:
        influent (InfluentDescriptor): measured wastewater.
        fractions (CODFractions): COD split; defaults if None.
        stoich_params (StoichiometricParameters): N and P contents of the pools.

    Returns:
        StateVector: influent concentrations (no biomass, no dissolved oxygen).
    """
    fractions = fractions or CODFractions()
    s = stoich_params or StoichiometricParameters()
    cod = influent.cod

    S_I = fractions.S_I * cod
    X_I = fractions.X_I * cod
    if influent.vfa is None:
        S_A = fractions.S_A * cod
        S_F = fractions.S_F * cod
        X_S = fractions.X_S * cod
    else:
        S_A = influent.vfa
        biodegradable = cod - S_I - X_I - S_A
        if biodegradable < -1e-9:
            raise ConfigurationError(
                f"influent VFA ({S_A:.1f}) plus inert COD exceeds total COD ({cod:.1f})")
        S_F = min(fractions.S_F * cod, max(biodegradable, 0.0))
        X_S = max(biodegradable - S_F, 0.0)

    organic_N = s.i_NSF * S_F + s.i_NSI * S_I + s.i_NXI * X_I + s.i_NXS * X_S
    if influent.tkn is not None:
        implied = influent.nh4 + organic_N
        if abs(implied - influent.tkn) > max(2.0, 0.15 * influent.tkn):
            logger.warning("Influent TKN %.1f g N/m3 differs from the %.1f implied by NH4 and COD fractions",
                           influent.tkn, implied)

    organic_P = s.i_PSF * S_F + s.i_PSI * S_I + s.i_PXI * X_I + s.i_PXS * X_S
    S_PO4 = influent.tp - organic_P
    if S_PO4 < 0.0:
        logger.warning("Influent TP %.2f g P/m3 is lower than the organic P implied by COD fractions (%.2f)",
                       influent.tp, organic_P)
        S_PO4 = 0.0
    if influent.po4 is not None and abs(S_PO4 - influent.po4) > max(1.0, 0.25 * influent.po4):
        logger.warning("Fractionated orthophosphate %.2f g P/m3 differs from measured %.2f",
                       S_PO4, influent.po4)

    return StateVector(
        S_O2=0.0, S_F=S_F, S_A=S_A, S_NH4=influent.nh4, S_NO3=influent.nitrate,
        S_PO4=S_PO4, S_I=S_I, S_ALK=influent.alkalinity / ALKALINITY_PER_MOL,
        X_I=X_I, X_S=X_S,
    )


class ConstantInfluent:
    """Steady influent; callable f(t) -> (Q, concentrations) like the schedules."""

    time_varying = False

    def __init__(self, descriptor, fractions=None, stoich_params=None):
        self.descriptor = descriptor
        self.state = fractionate_influent(descriptor, fractions, stoich_params)
        self._concentrations = self.state.as_array()
        self._concentrations.setflags(write=False)

    def __call__(self, t):
        return self.descriptor.flow, self._concentrations

    def mean_descriptor(self):
        return self.descriptor

    def min_flow(self):
        return self.descriptor.flow


class InfluentSchedule:
    """
    Time-varying influent from a table of descriptor rows.

    Each row is fractionated once; flow and the 18 concentrations are then
    linearly interpolated in time, holding the first/last row outside the table.
    """

    time_varying = True

    def __init__(self, table, fractions=None, stoich_params=None):
        if 'time' not in table.columns or 'flow' not in table.columns:
            raise ConfigurationError("influent table needs at least 'time' and 'flow' columns")
        allowed = {f.name for f in fields(InfluentDescriptor)}
        unknown = set(table.columns) - allowed - {'time'}
        if unknown:
            raise ConfigurationError(f"unknown influent columns: {sorted(unknown)}")
        df = table.sort_values('time').reset_index(drop=True)
        if len(df) < 1:
            raise ConfigurationError("influent table is empty")
        if df['time'].duplicated().any():
            raise ConfigurationError("influent table has duplicate time points")

        columns = [c for c in df.columns if c != 'time']
        self.table = df
        self.descriptors = [
            InfluentDescriptor(**{c: float(row[c]) for c in columns if not pd.isna(row[c])})
            for _, row in df.iterrows()
        ]
        states = np.vstack([fractionate_influent(d, fractions, stoich_params).as_array()
                            for d in self.descriptors])
        time_points = df['time'].to_numpy(dtype=float)
        flow_values = df['flow'].to_numpy(dtype=float)

        if len(df) == 1:
            # single row: constant schedule
            time_points = np.array([time_points[0], time_points[0] + 1.0])
            flow_values = np.repeat(flow_values, 2)
            states = np.vstack([states, states])

        self.time_points = time_points
        self.flow_interpolator = interp1d(time_points, flow_values, kind='linear',
                                          bounds_error=False, fill_value=(flow_values[0], flow_values[-1]))
        self.conc_interpolator = interp1d(time_points, states, kind='linear', axis=0,
                                          bounds_error=False, fill_value=(states[0], states[-1]))

    @classmethod
    def from_csv(cls, file_path, fractions=None, stoich_params=None, **read_kwargs):
        df = pd.read_csv(file_path, **read_kwargs)
        return cls(df, fractions, stoich_params)

    def __call__(self, t):
        return float(self.flow_interpolator(t)), np.asarray(self.conc_interpolator(t), dtype=float)

    def min_flow(self):
        return float(self.table['flow'].min())

    def mean_descriptor(self):
        """Flow-weighted mean of the table rows."""
        w = self.table['flow'].to_numpy(dtype=float)
        values = {'flow': float(w.mean())}
        for name in (f.name for f in fields(InfluentDescriptor)):
            if name == 'flow' or name not in self.table.columns:
                continue
            column = self.table[name]
            if column.isna().any():
                continue
            values[name] = float((w * column.to_numpy(dtype=float)).sum() / w.sum())
        return InfluentDescriptor(**values)


def as_influent_function(influent, fractions=None, stoich_params=None):
    """Accepts a descriptor, ConstantInfluent or InfluentSchedule; returns a callable influent."""
    if isinstance(influent, InfluentDescriptor):
        return ConstantInfluent(influent, fractions, stoich_params)
    if isinstance(influent, (ConstantInfluent, InfluentSchedule)):
        return influent
    raise TypeError(f"unsupported influent type {type(influent).__name__}")
