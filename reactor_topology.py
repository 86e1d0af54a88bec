# reactor_topology.py File

import logging
from dataclasses import dataclass, replace
from enum import Enum

import numpy as np

from asm2d_parameters import ConfigurationError

logger = logging.getLogger(__name__)

UNDERFLOW = 'clarifier_underflow'  # source name of the return sludge stream
DEFAULT_DO_SETPOINT = 2.0          # g O2/m^3
DEFAULT_TOTAL_VOLUME = 9000.0      # m^3, preset plant size


class ZoneType(str, Enum):
    ANAEROBIC = 'anaerobic'
    ANOXIC = 'anoxic'
    AEROBIC = 'aerobic'


@dataclass(frozen=True)
class ReactorZone:
    """One completely mixed compartment of the bioreactor."""
    name: str
    zone_type: ZoneType
    volume: float                # m^3
    do_setpoint: float = None    # g O2/m^3, aerobic zones only
    feed_fraction: float = 0.0   # share of the influent fed to this zone (step feed)

    def __post_init__(self):
        try:
            zone_type = ZoneType(getattr(self.zone_type, 'value', self.zone_type))
        except ValueError:
            raise ConfigurationError(f"zone {self.name!r}: unknown zone type {self.zone_type!r}") from None
        object.__setattr__(self, 'zone_type', zone_type)
        if not self.name:
            raise ConfigurationError("zone name must not be empty")
        if not self.volume > 0.0:
            raise ConfigurationError(f"zone {self.name!r}: volume must be positive, got {self.volume}")
        if zone_type is ZoneType.AEROBIC:
            if self.do_setpoint is None:
                object.__setattr__(self, 'do_setpoint', DEFAULT_DO_SETPOINT)
            elif not self.do_setpoint >= 0.0:
                raise ConfigurationError(f"zone {self.name!r}: DO setpoint must be non-negative")
        elif self.do_setpoint:
            raise ConfigurationError(f"zone {self.name!r}: only aerobic zones take a DO setpoint")
        if not 0.0 <= self.feed_fraction <= 1.0:
            raise ConfigurationError(f"zone {self.name!r}: feed fraction must lie in [0, 1]")

    @classmethod
    def from_hrt(cls, name, zone_type, hrt_hours, design_flow, **kwargs):
        """Sizes the zone from a nominal retention time (h) at the design influent flow (m^3/d)."""
        if not hrt_hours > 0.0:
            raise ConfigurationError(f"zone {name!r}: hydraulic retention time must be positive")
        if not design_flow > 0.0:
            raise ConfigurationError("design flow must be positive")
        return cls(name, zone_type, hrt_hours / 24.0 * design_flow, **kwargs)

    def hrt(self, flow):
        """Nominal hydraulic retention time (h) at the given influent flow."""
        return self.volume / flow * 24.0


@dataclass(frozen=True)
class RecycleStream:
    """Mixed-liquor recirculation from one zone outlet to another zone inlet, ratio to influent flow."""
    name: str
    source: str
    destination: str
    ratio: float

    def __post_init__(self):
        if not self.ratio >= 0.0:
            raise ConfigurationError(f"recycle {self.name!r}: ratio must be non-negative, got {self.ratio}")


@dataclass(frozen=True)
class Hydraulics:
    """Flows (m^3/d) of a topology at one influent flow."""
    influent: float
    wastage: float
    effluent: float
    ras: float
    feed: np.ndarray          # influent to each zone
    through: np.ndarray       # total flow through each zone
    forward: np.ndarray       # flow passed on to the next zone (last: clarifier feed)
    recycles: tuple           # (destination index, source index or -1 for underflow, flow)

    @property
    def clarifier_feed(self):
        return float(self.forward[-1])


@dataclass(frozen=True)
class ReactorTopology:
    """
    Ordered chain of zones with return sludge, internal recycle and
    sludge wastage from the last zone at Q_w = V_total / SRT.
    """
    zones: tuple
    srt: float = 15.0                      # d
    temperature: float = 20.0              # deg C
    ras_ratio: float = 1.0                 # Q_RAS / Q
    internal_recycle_ratio: float = 0.0    # Q_IR / Q
    ras_destination: str = None            # default: first zone
    internal_recycle_source: str = None    # default: last aerobic zone
    internal_recycle_destination: str = None  # default: first anoxic zone
    extra_recycles: tuple = ()
    enable_dpao: bool = True
    enable_chem_p: bool = False
    metal_dose: float = 0.0                # g X_MeOH per m^3 influent (chemical P removal)
    solids_capture: float = 0.999          # fraction of particulates sent to the underflow

    def __post_init__(self):
        zones = tuple(self.zones)
        if not zones:
            raise ConfigurationError("topology needs at least one zone")
        if not all(isinstance(z, ReactorZone) for z in zones):
            raise ConfigurationError("zones must be ReactorZone instances")
        names = [z.name for z in zones]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(f"duplicate zone names: {duplicates}")
        if not self.srt > 0.0:
            raise ConfigurationError(f"solids retention time must be positive, got {self.srt}")
        if not 0.0 <= self.temperature <= 45.0:
            raise ConfigurationError(f"temperature {self.temperature} deg C outside 0-45")
        if not self.ras_ratio >= 0.0:
            raise ConfigurationError(f"RAS ratio must be non-negative, got {self.ras_ratio}")
        if not self.internal_recycle_ratio >= 0.0:
            raise ConfigurationError(f"internal recycle ratio must be non-negative, got {self.internal_recycle_ratio}")
        if not 0.0 < self.solids_capture <= 1.0:
            raise ConfigurationError("solids capture must lie in (0, 1]")
        if not self.metal_dose >= 0.0:
            raise ConfigurationError("metal dose must be non-negative")

        # --- Step feed: all influent to the first zone unless stated ---
        total_feed = sum(z.feed_fraction for z in zones)
        if total_feed == 0.0:
            zones = (replace(zones[0], feed_fraction=1.0),) + zones[1:]
        elif abs(total_feed - 1.0) > 1e-6:
            raise ConfigurationError(f"zone feed fractions must sum to 1, got {total_feed:.4f}")
        object.__setattr__(self, 'zones', zones)
        object.__setattr__(self, 'extra_recycles', tuple(self.extra_recycles))

        # --- Default recycle routing ---
        if self.ras_destination is None:
            object.__setattr__(self, 'ras_destination', names[0])
        if self.internal_recycle_ratio > 0.0:
            if self.internal_recycle_source is None:
                aerobic = [z.name for z in zones if z.zone_type is ZoneType.AEROBIC]
                if not aerobic:
                    raise ConfigurationError("internal recycle needs an aerobic source zone")
                object.__setattr__(self, 'internal_recycle_source', aerobic[-1])
            if self.internal_recycle_destination is None:
                anoxic = [z.name for z in zones if z.zone_type is ZoneType.ANOXIC]
                if not anoxic:
                    raise ConfigurationError("internal recycle needs an anoxic destination zone")
                object.__setattr__(self, 'internal_recycle_destination', anoxic[0])

        for stream in self.recycle_streams():
            if stream.source != UNDERFLOW and stream.source not in names:
                raise ConfigurationError(f"recycle {stream.name!r}: unknown source zone {stream.source!r}")
            if stream.destination not in names:
                raise ConfigurationError(f"recycle {stream.name!r}: unknown destination zone {stream.destination!r}")

        if self.enable_chem_p and self.metal_dose == 0.0:
            logger.warning("Chemical P removal enabled without a metal dose; precipitation will be inactive")

    # --- Derived quantities ---

    @property
    def zone_names(self):
        return [z.name for z in self.zones]

    @property
    def zone_types(self):
        return [z.zone_type for z in self.zones]

    @property
    def volumes(self):
        return np.array([z.volume for z in self.zones], dtype=float)

    @property
    def total_volume(self):
        return float(self.volumes.sum())

    @property
    def wastage_flow(self):
        """Sludge wastage (m^3/d) that realises the SRT, taken from the last zone."""
        return self.total_volume / self.srt

    def index(self, zone_name):
        return self.zone_names.index(zone_name)

    def recycle_streams(self):
        streams = [RecycleStream('ras', UNDERFLOW, self.ras_destination, self.ras_ratio)]
        if self.internal_recycle_ratio > 0.0:
            streams.append(RecycleStream('internal_recycle', self.internal_recycle_source,
                                         self.internal_recycle_destination, self.internal_recycle_ratio))
        streams.extend(self.extra_recycles)
        return streams

    def hydraulics(self, influent_flow):
        """
        Resolves all flows for an influent flow Q.

        Raises:
            ConfigurationError: wastage not smaller than Q, or a zone left
            without forward flow.
        """
        Q = float(influent_flow)
        Q_w = self.wastage_flow
        if not Q > 0.0:
            raise ConfigurationError(f"influent flow must be positive, got {Q}")
        if Q_w >= Q:
            raise ConfigurationError(
                f"wastage flow {Q_w:.1f} m3/d (V/SRT) is not smaller than influent flow {Q:.1f} m3/d")

        n = len(self.zones)
        names = self.zone_names
        feed = np.array([z.feed_fraction for z in self.zones]) * Q
        recycle_in = np.zeros(n)
        recycle_out = np.zeros(n)
        recycles = []
        Q_ras = 0.0
        for stream in self.recycle_streams():
            flow = stream.ratio * Q
            if flow == 0.0:
                continue
            dest = names.index(stream.destination)
            if stream.source == UNDERFLOW:
                src = -1
                Q_ras += flow
            else:
                src = names.index(stream.source)
                recycle_out[src] += flow
            recycle_in[dest] += flow
            recycles.append((dest, src, flow))

        through = np.zeros(n)
        forward = np.zeros(n)
        upstream = 0.0
        for i in range(n):
            through[i] = upstream + feed[i] + recycle_in[i]
            forward[i] = through[i] - recycle_out[i] - (Q_w if i == n - 1 else 0.0)
            if through[i] <= 0.0:
                raise ConfigurationError(f"zone {names[i]!r} receives no flow")
            if forward[i] <= 0.0:
                raise ConfigurationError(
                    f"zone {names[i]!r}: recycle withdrawals exceed the flow through the zone")
            upstream = forward[i]

        Q_e = Q - Q_w
        if forward[-1] - Q_ras <= 0.0:
            raise ConfigurationError("clarifier feed does not exceed the return sludge flow")
        return Hydraulics(Q, Q_w, Q_e, Q_ras, feed, through, forward, tuple(recycles))

    def summary(self, influent_flow):
        """Zone table: volume, nominal and actual retention times (h) at the given flow."""
        h = self.hydraulics(influent_flow)
        return [
            {'zone': z.name, 'type': z.zone_type.value, 'volume': z.volume,
             'hrt_nominal_h': z.hrt(influent_flow), 'hrt_actual_h': z.volume / h.through[i] * 24.0,
             'do_setpoint': z.do_setpoint}
            for i, z in enumerate(self.zones)
        ]


# --- Process configuration presets ---
# (zone name, type, relative volume), ordered upstream -> downstream

_PRESET_LAYOUTS = {
    'a2o': dict(
        zones=[('anaerobic', 'anaerobic', 1.5), ('anoxic', 'anoxic', 2.5), ('aerobic', 'aerobic', 5.0)],
        ras_ratio=0.5, internal_recycle_ratio=3.0),
    'ao': dict(
        zones=[('anaerobic', 'anaerobic', 1.0), ('aerobic', 'aerobic', 4.0)],
        ras_ratio=0.5, internal_recycle_ratio=0.0),
    'bardenpho_5': dict(
        zones=[('anaerobic', 'anaerobic', 1.0), ('anoxic_1', 'anoxic', 2.0), ('aerobic_1', 'aerobic', 4.5),
               ('anoxic_2', 'anoxic', 1.5), ('aerobic_2', 'aerobic', 0.5)],
        ras_ratio=0.5, internal_recycle_ratio=3.0,
        internal_recycle_source='aerobic_1', internal_recycle_destination='anoxic_1'),
    'johannesburg': dict(
        zones=[('pre_anoxic', 'anoxic', 0.7), ('anaerobic', 'anaerobic', 1.0), ('anoxic', 'anoxic', 2.3),
               ('aerobic', 'aerobic', 5.0)],
        feed_zone='anaerobic', ras_ratio=0.5, internal_recycle_ratio=3.0,
        internal_recycle_destination='anoxic'),
    'uct': dict(
        zones=[('anaerobic', 'anaerobic', 1.5), ('anoxic', 'anoxic', 2.5), ('aerobic', 'aerobic', 5.0)],
        ras_ratio=0.5, internal_recycle_ratio=2.0, ras_destination='anoxic',
        extra_recycles=(RecycleStream('anoxic_recycle', 'anoxic', 'anaerobic', 1.0),)),
}

PRESET_NAMES = sorted(_PRESET_LAYOUTS)


def get_preset_topology(name, total_volume=DEFAULT_TOTAL_VOLUME, do_setpoint=DEFAULT_DO_SETPOINT, **overrides):
    """
    Returns a ReactorTopology for a standard EBPR process configuration.

    Args:
        name (str): one of 'a2o', 'ao', 'bardenpho_5', 'johannesburg', 'uct'.
        total_volume (float): bioreactor volume (m^3) split over the zones.
        do_setpoint (float): DO setpoint of the aerobic zones (g O2/m^3).
        **overrides: any ReactorTopology field (srt, temperature, ras_ratio, ...).
    """
    key = name.lower().replace('-', '_')
    if key not in _PRESET_LAYOUTS:
        raise ConfigurationError(f"unknown preset {name!r}; choose from {PRESET_NAMES}")
    if not total_volume > 0.0:
        raise ConfigurationError("total volume must be positive")
    layout = dict(_PRESET_LAYOUTS[key])
    zone_specs = layout.pop('zones')
    feed_zone = layout.pop('feed_zone', zone_specs[0][0])
    weight = sum(v for _, _, v in zone_specs)

    zones = tuple(
        ReactorZone(zone_name, zone_type, total_volume * v / weight,
                    do_setpoint=do_setpoint if zone_type == 'aerobic' else None,
                    feed_fraction=1.0 if zone_name == feed_zone else 0.0)
        for zone_name, zone_type, v in zone_specs
    )
    layout.update(overrides)
    return ReactorTopology(zones=zones, **layout)
