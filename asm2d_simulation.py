# asm2d_simulation.py File

import logging
import time
from dataclasses import dataclass
from enum import Enum

import numpy as np
import pandas as pd

from ASM2d_Processes import PROCESS_NAMES, ProcessRateModel, zone_gates
from asm2d_parameters import (ConfigurationError, correct_temperature, dissolved_oxygen_saturation,
                              get_asm2d_params)
from asm2d_state import COMPONENTS, IDX, N_COMPONENTS, StateVector, default_initial_state
from asm2d_validation import build_report
from clarifier_model import ideal_clarifier
from influent import as_influent_function
from reactor_topology import ZoneType

logger = logging.getLogger(__name__)

DEFAULT_TIME_STEP = 1.0 / 1440.0   # d (1 min)
STEADY_STATE_HORIZON = 60.0        # d, about four SRTs at the default 15 d
STEADY_STATE_INTERVAL = 1.0        # d
DYNAMIC_HORIZON = 1.0              # d
DYNAMIC_INTERVAL = 1.0 / 96.0      # d (15 min, BSM reporting grid)
DIVERGENCE_LIMIT = 1e6             # g/m3; no pool of a real sludge comes near this

SO2 = IDX['S_O2']
MeOH = IDX['X_MeOH']


class SimulationMode(str, Enum):
    STEADY_STATE = 'steady_state'
    DYNAMIC = 'dynamic'


@dataclass(frozen=True)
class SimulationConfig:
    """
    Run settings. The tolerance only serves the steady-state convergence
    check; the time step is fixed.
    """
    mode: SimulationMode = SimulationMode.STEADY_STATE
    start_time: float = 0.0
    end_time: float = None          # d; mode default if None
    time_step: float = DEFAULT_TIME_STEP
    report_interval: float = None   # d; mode default if None
    tolerance: float = 1e-3
    initial_state: object = None    # StateVector, {zone name: StateVector} or None

    def __post_init__(self):
        try:
            mode = SimulationMode(getattr(self.mode, 'value', self.mode))
        except ValueError:
            raise ConfigurationError(f"unknown simulation mode {self.mode!r}") from None
        object.__setattr__(self, 'mode', mode)
        steady = mode is SimulationMode.STEADY_STATE
        if self.end_time is None:
            object.__setattr__(self, 'end_time',
                               self.start_time + (STEADY_STATE_HORIZON if steady else DYNAMIC_HORIZON))
        if self.report_interval is None:
            object.__setattr__(self, 'report_interval', STEADY_STATE_INTERVAL if steady else DYNAMIC_INTERVAL)

        if not self.time_step > 0.0:
            raise ConfigurationError(f"time step must be positive, got {self.time_step}")
        if not self.end_time > self.start_time:
            raise ConfigurationError("end time must be later than start time")
        span = self.end_time - self.start_time
        if abs(self.n_steps * self.time_step - span) > 1e-6 * self.time_step:
            raise ConfigurationError(f"horizon {span:g} d is not a whole number of {self.time_step:g} d steps")
        if not self.report_interval >= self.time_step:
            raise ConfigurationError("reporting interval must not be shorter than the time step")
        if not self.tolerance > 0.0:
            raise ConfigurationError("tolerance must be positive")

    @classmethod
    def steady_state(cls, **kwargs):
        return cls(mode=SimulationMode.STEADY_STATE, **kwargs)

    @classmethod
    def dynamic(cls, end_time=None, **kwargs):
        return cls(mode=SimulationMode.DYNAMIC, end_time=end_time, **kwargs)

    @property
    def n_steps(self):
        return max(1, int(round((self.end_time - self.start_time) / self.time_step)))

    @property
    def steps_per_report(self):
        return max(1, int(round(self.report_interval / self.time_step)))


@dataclass(frozen=True)
class Diagnostics:
    clamp_events: int                 # number of (zone, variable, step) clamps to zero
    clamp_counts: dict                # per state variable
    converged: bool                   # None in dynamic mode
    max_relative_change: float        # over the last reporting interval
    warnings: tuple = ()
    diverged: bool = False            # integration stopped on a blown-up state
    time_to_steady_state: float = None  # d, first sample within tolerance; steady mode only


@dataclass(frozen=True)
class RunMetadata:
    mode: SimulationMode
    steps: int
    time_step: float
    start_time: float
    end_time: float
    wall_time: float                  # s


@dataclass(frozen=True)
class SimulationResult:
    """Outcome of one run. Arrays are read-only."""
    zone_names: tuple
    final_states: dict                # zone name -> StateVector
    times: np.ndarray                 # (n_t,) snapshot times
    trajectory: np.ndarray            # (n_t, n_zones, 18)
    process_rates: np.ndarray         # (n_t, n_zones, 21) at each snapshot
    influent_flows: np.ndarray        # (n_t,)
    report: object                    # asm2d_validation.PlantReport
    diagnostics: Diagnostics
    metadata: RunMetadata

    def zone_state(self, name):
        return self.final_states[name]

    def to_frame(self):
        """Long-format time series: one row per (time, zone)."""
        n_t, n_z, _ = self.trajectory.shape
        df = pd.DataFrame(self.trajectory.reshape(n_t * n_z, N_COMPONENTS), columns=COMPONENTS)
        df.insert(0, 'zone', np.tile(self.zone_names, n_t))
        df.insert(0, 'time', np.repeat(self.times, n_z))
        return df

    def rates_frame(self):
        """Long-format process rates: one row per (time, zone)."""
        n_t, n_z, n_p = self.process_rates.shape
        df = pd.DataFrame(self.process_rates.reshape(n_t * n_z, n_p), columns=PROCESS_NAMES)
        df.insert(0, 'zone', np.tile(self.zone_names, n_t))
        df.insert(0, 'time', np.repeat(self.times, n_z))
        return df

    def final_frame(self):
        """Final state per zone, zones as rows."""
        return pd.DataFrame([self.final_states[z].as_dict() for z in self.zone_names], index=list(self.zone_names))


class ASM2dPlant:
    """
    Bioreactor chain with clarifier, compiled for one topology and parameter set.

    States are held as an (n_zones, 18) array. Dissolved oxygen is not
    integrated: aerobic zones sit at their setpoint (ideal aeration control)
    and the other zones at zero.
    """

    def __init__(self, topology, kinetic_params, stoich_params, temperature_coefficients=None):
        self.topology = topology
        self.stoich = stoich_params
        self.kinetic = correct_temperature(kinetic_params, topology.temperature, temperature_coefficients)
        self.model = ProcessRateModel(self.kinetic, stoich_params)
        self.gates = zone_gates(topology.zone_types, topology.enable_dpao, topology.enable_chem_p)
        self.volumes = topology.volumes
        self.n_zones = len(topology.zones)
        self.warnings = []

        saturation = dissolved_oxygen_saturation(topology.temperature)
        targets = np.zeros(self.n_zones)
        for i, zone in enumerate(topology.zones):
            if zone.zone_type is ZoneType.AEROBIC:
                targets[i] = min(zone.do_setpoint, saturation)
                if zone.do_setpoint > saturation:
                    self._warn(f"DO setpoint {zone.do_setpoint:.2f} in zone {zone.name!r} capped at "
                               f"saturation {saturation:.2f} g/m3")
        self.do_targets = targets
        self._hydraulics = None

    def _warn(self, message):
        logger.warning(message)
        self.warnings.append(message)

    def hydraulics(self, Q):
        if self._hydraulics is None or self._hydraulics.influent != Q:
            self._hydraulics = self.topology.hydraulics(Q)
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("Hydraulics at Q=%.1f m3/d: through=%s, Q_w=%.1f, Q_ras=%.1f", Q,
                             np.round(self._hydraulics.through, 1), self._hydraulics.wastage, self._hydraulics.ras)
        return self._hydraulics

    def pin_oxygen(self, C):
        C[:, SO2] = self.do_targets
        return C

    def influent_concs(self, C_in):
        if self.topology.enable_chem_p and self.topology.metal_dose > 0.0:
            C_in = np.array(C_in, dtype=float)
            C_in[MeOH] += self.topology.metal_dose
        return C_in

    def clarifier(self, C_last, hyd):
        return ideal_clarifier(C_last, hyd.clarifier_feed, hyd.ras, self.topology.solids_capture)

    def external_inflow(self, C, hyd, C_in):
        """
        Mass inflow (g/d) from the influent and all recycle streams, evaluated
        at the given state. Held fixed over a step (lagged recycle).
        """
        ext = np.outer(hyd.feed, self.influent_concs(C_in))
        if hyd.recycles:
            _, underflow = self.clarifier(C[-1], hyd)
            for dest, src, flow in hyd.recycles:
                ext[dest] += flow * (underflow if src < 0 else C[src])
        return ext

    def transport(self, C, hyd, ext):
        upstream = np.zeros_like(C)
        upstream[1:] = hyd.forward[:-1, None] * C[:-1]
        return (ext + upstream - hyd.through[:, None] * C) / self.volumes[:, None]

    def derivatives(self, C, hyd, ext):
        """dC/dt for all zones, (n_zones, 18); S_O2 is held, not integrated."""
        dC = self.transport(C, hyd, ext) + self.model.reaction_rates(C, self.gates)
        dC[:, SO2] = 0.0
        return dC

    def oxygen_supply(self, C, hyd, ext):
        """Aeration needed to hold the DO targets, g O2/d per zone."""
        dO2 = self.transport(C, hyd, ext)[:, SO2] + self.model.reaction_rates(C, self.gates)[:, SO2]
        supply = -dO2 * self.volumes
        supply[self.do_targets == 0.0] = 0.0
        return np.maximum(supply, 0.0)

    def initial_states(self, initial_state):
        if initial_state is None:
            initial_state = default_initial_state()
        if isinstance(initial_state, StateVector):
            C = np.tile(initial_state.as_array(), (self.n_zones, 1))
        elif isinstance(initial_state, dict):
            missing = [z for z in self.topology.zone_names if z not in initial_state]
            if missing:
                raise ConfigurationError(f"initial state missing for zones {missing}")
            C = np.vstack([initial_state[z].as_array() for z in self.topology.zone_names])
        else:
            raise ConfigurationError("initial state must be a StateVector or a {zone name: StateVector} mapping")
        return self.pin_oxygen(C)


def rk4_step(C, dt, f):
    """Classical fourth-order Runge-Kutta step of dC/dt = f(C)."""
    k1 = f(C)
    k2 = f(C + 0.5 * dt * k1)
    k3 = f(C + 0.5 * dt * k2)
    k4 = f(C + dt * k3)
    return C + dt / 6.0 * (k1 + 2.0 * k2 + 2.0 * k3 + k4)


def clamp_negative(C, counts):
    """Sets negative concentrations to zero in place, adding to per-variable counts. Returns clamps made."""
    negative = C < 0.0
    n = int(negative.sum())
    if n:
        counts += negative.sum(axis=0)
        C[negative] = 0.0
    return n


def relative_change(C_new, C_old):
    return float(np.max(np.abs(C_new - C_old) / np.maximum(np.abs(C_new), 1.0)))


def has_diverged(C):
    """True once the state is no longer finite or leaves any physical range."""
    return not np.all(np.isfinite(C)) or float(np.max(np.abs(C))) > DIVERGENCE_LIMIT


def run_simulation(topology, influent, config=None, stoich_params=None, kinetic_params=None,
                   temperature_coefficients=None, cod_fractions=None):
    """
    Runs the ASM2d plant to steady state or over a dynamic horizon.

    Args:
        topology (ReactorTopology): zones, recycles, SRT and temperature.
        influent: InfluentDescriptor (constant), ConstantInfluent or InfluentSchedule.
        config (SimulationConfig): defaults to steady-state mode.
        stoich_params, kinetic_params, temperature_coefficients: parameter sets
            at 20 deg C; ASM2d defaults if None. Never modified.
        cod_fractions (CODFractions): influent COD split.

    Returns:
        SimulationResult

    Raises:
        ConfigurationError: before any integration, for an invalid setup.
    """
    config = config or SimulationConfig()
    default_stoich, default_kinetic, default_theta = get_asm2d_params()
    stoich_params = stoich_params or default_stoich
    kinetic_params = kinetic_params or default_kinetic
    temperature_coefficients = temperature_coefficients or default_theta

    # --- 1) Validate and compile everything before integrating ---
    influent_fn = as_influent_function(influent, cod_fractions, stoich_params)
    steady = config.mode is SimulationMode.STEADY_STATE
    if steady and influent_fn.time_varying:
        raise ConfigurationError("steady-state mode needs a constant influent")
    topology.hydraulics(influent_fn.min_flow())  # raises on impossible flows
    plant = ASM2dPlant(topology, kinetic_params, stoich_params, temperature_coefficients)
    C = plant.initial_states(config.initial_state)

    dt = config.time_step
    n_steps = config.n_steps
    every = config.steps_per_report
    clamp_counts = np.zeros(N_COMPONENTS, dtype=int)
    clamp_events = clamp_negative(C, clamp_counts)

    logger.info("ASM2d %s run: %d zones, %.2f-%.2f d, dt=%.2e d (%d steps)", config.mode.value,
                plant.n_zones, config.start_time, config.end_time, dt, n_steps)
    wall_start = time.perf_counter()

    times = [config.start_time]
    snapshots = [C.copy()]
    flows = [influent_fn(config.start_time)[0]]
    previous, previous_time = C.copy(), config.start_time
    steady_time = None
    diverged = False

    # --- 2) Fixed-step integration ---
    t = config.start_time
    steps = 0
    for k in range(n_steps):
        Q, C_in = influent_fn(t)
        hyd = plant.hydraulics(Q)
        ext = plant.external_inflow(C, hyd, C_in)
        C_next = rk4_step(C, dt, lambda X: plant.derivatives(X, hyd, ext))
        if has_diverged(C_next):
            # the last accepted state is kept
            diverged = True
            break
        C = C_next
        clamp_events += clamp_negative(C, clamp_counts)
        plant.pin_oxygen(C)
        steps = k + 1
        t = config.start_time + steps * dt

        if steps % every == 0 or steps == n_steps:
            if steady:
                if steady_time is None and relative_change(C, previous) <= config.tolerance:
                    steady_time = t
                # only the latest sample before the end is kept, for the convergence check
                if steps < n_steps:
                    previous, previous_time = C.copy(), t
            else:
                times.append(t)
                snapshots.append(C.copy())
                flows.append(influent_fn(t)[0])

    wall_time = time.perf_counter() - wall_start

    # --- 3) Diagnostics ---
    warnings = list(plant.warnings)
    if diverged:
        message = (f"integration diverged at t={t:.4f} d after {steps} steps; "
                   f"reduce the time step below {dt:.2e} d")
        logger.error(message)
        warnings.append(message)
    if steady:
        times, snapshots, flows = [t], [C.copy()], [influent_fn(t)[0]]
    else:
        if times[-1] != t:
            times.append(t)
            snapshots.append(C.copy())
            flows.append(influent_fn(t)[0])
        if len(snapshots) > 1:
            previous, previous_time = snapshots[-2], times[-2]
    change = relative_change(C, previous)
    converged = change <= config.tolerance and not diverged if steady else None
    if steady and not converged:
        message = (f"steady state not reached: max relative change {change:.2e} over the last "
                   f"reporting interval exceeds tolerance {config.tolerance:.1e}")
        logger.warning(message)
        warnings.append(message)
    if clamp_events:
        message = f"{clamp_events} negative concentrations clamped to zero"
        logger.warning(message)
        warnings.append(message)

    times = np.asarray(times, dtype=float)
    trajectory = np.asarray(snapshots)
    process_rates = np.asarray([plant.model.rates(X, plant.gates) for X in snapshots])
    flows = np.asarray(flows, dtype=float)
    report = build_report(plant, C, influent_fn, t, previous_states=previous,
                          sample_interval=t - previous_time,
                          times=None if steady else times,
                          trajectory=None if steady else trajectory,
                          flows=None if steady else flows)
    warnings.extend(report.warnings)

    logger.info("ASM2d run finished: %d steps in %.2f s", steps, wall_time)
    for array in (trajectory, process_rates, times, flows):
        array.setflags(write=False)

    return SimulationResult(
        zone_names=tuple(topology.zone_names),
        final_states={z: StateVector.from_array(C[i]) for i, z in enumerate(topology.zone_names)},
        times=times,
        trajectory=trajectory,
        process_rates=process_rates,
        influent_flows=flows,
        report=report,
        diagnostics=Diagnostics(
            clamp_events=clamp_events,
            clamp_counts={c: int(n) for c, n in zip(COMPONENTS, clamp_counts)},
            converged=converged,
            max_relative_change=change,
            warnings=tuple(warnings),
            diverged=diverged,
            time_to_steady_state=steady_time,
        ),
        metadata=RunMetadata(config.mode, steps, dt, config.start_time, t, wall_time),
    )
