# asm2d_validation.py File
import logging
import os
from dataclasses import dataclass, asdict

import numpy as np
import pandas as pd

from ASM2d_Processes import PIDX
from asm2d_state import (IDX, P_CONTENT_MeP, bod5, soluble_cod, total_cod, total_kjeldahl_nitrogen,
                         total_nitrogen, total_phosphorus, total_suspended_solids, volatile_suspended_solids)
from clarifier_model import ideal_clarifier

logger = logging.getLogger(__name__)

CLOSURE_RANGE = (90.0, 110.0)  # % acceptable phosphorus balance closure


@dataclass(frozen=True)
class StreamQuality:
    """Conventional indices of a stream (g/m^3)."""
    cod: float
    soluble_cod: float
    bod5: float
    tss: float
    vss: float
    tkn: float
    nh4: float
    no3: float
    tn: float
    tp: float
    po4: float

    @classmethod
    def from_state(cls, x, stoich):
        x = np.asarray(x, float)
        return cls(
            cod=float(total_cod(x)),
            soluble_cod=float(soluble_cod(x)),
            bod5=float(bod5(x, stoich)),
            tss=float(total_suspended_solids(x, stoich)),
            vss=float(volatile_suspended_solids(x, stoich)),
            tkn=float(total_kjeldahl_nitrogen(x, stoich)),
            nh4=float(x[IDX['S_NH4']]),
            no3=float(x[IDX['S_NO3']]),
            tn=float(total_nitrogen(x, stoich)),
            tp=float(total_phosphorus(x, stoich)),
            po4=float(x[IDX['S_PO4']]),
        )


@dataclass(frozen=True)
class PAOMetrics:
    pao_fraction: float       # % of active biomass COD, plant average
    pha_per_pao: float        # g COD/g COD, plant average
    pp_per_pao: float         # g P/g COD, plant average
    dpao_share: float         # % of PP storage driven by nitrate
    p_release_rate: float     # kg P/d released in anaerobic zones
    p_uptake_rate: float      # kg P/d stored as PP in anoxic and aerobic zones


@dataclass(frozen=True)
class PhosphorusBalance:
    """Loads in kg P/d; inventory in kg P."""
    influent_load: float
    effluent_load: float
    sludge_load: float
    chemical_sludge_load: float
    inventory: float
    accumulation: float
    closure: float                # % (effluent + sludge) / influent
    closure_with_storage: float   # % including the inventory change


@dataclass(frozen=True)
class SludgeProduction:
    tss: float                # kg TSS/d wasted
    vss: float                # kg VSS/d wasted
    p_content: float          # % P of wasted TSS
    observed_yield: float     # kg VSS/kg COD removed


@dataclass(frozen=True)
class OxygenDemand:
    total: float              # kg O2/d
    nitrification: float      # kg O2/d used by autotrophs
    per_zone: dict            # zone name -> kg O2/d


@dataclass(frozen=True)
class PlantReport:
    influent: StreamQuality           # fractionated model influent
    effluent: StreamQuality
    removal: dict                     # index -> % removal against the influent descriptor
    pao: PAOMetrics
    phosphorus: PhosphorusBalance
    sludge: SludgeProduction
    oxygen: OxygenDemand
    zones: tuple                      # per-zone summary dicts
    kpis: dict = None                 # dynamic runs only
    warnings: tuple = ()

    def to_frame(self):
        """Flat (section, metric, value) table."""
        rows = []
        for section in ('influent', 'effluent', 'pao', 'phosphorus', 'sludge'):
            for metric, value in asdict(getattr(self, section)).items():
                rows.append((section, metric, value))
        rows.extend(('removal', k, v) for k, v in self.removal.items())
        rows.append(('oxygen', 'total', self.oxygen.total))
        rows.append(('oxygen', 'nitrification', self.oxygen.nitrification))
        rows.extend(('oxygen', zone, v) for zone, v in self.oxygen.per_zone.items())
        if self.kpis:
            rows.extend(('kpi', k, v) for k, v in self.kpis.items())
        return pd.DataFrame(rows, columns=['section', 'metric', 'value'])

    def zone_frame(self):
        return pd.DataFrame(list(self.zones)).set_index('zone')


def removal_efficiencies(descriptor, influent, effluent):
    """
    Percent removal per index. Measured influent values are used where the
    descriptor has them, model values otherwise. Not clipped: negative
    values mean the effluent exceeds the influent.
    """
    def pct(inf, eff):
        return float(100.0 * (inf - eff) / inf) if inf > 0.0 else 0.0

    tkn = descriptor.tkn if descriptor.tkn is not None else influent.tkn
    return {
        'cod': pct(descriptor.cod, effluent.cod),
        'bod5': pct(descriptor.bod5 if descriptor.bod5 is not None else influent.bod5, effluent.bod5),
        'tss': pct(descriptor.tss if descriptor.tss is not None else influent.tss, effluent.tss),
        'nh4': pct(descriptor.nh4, effluent.nh4),
        'tn': pct(tkn + descriptor.nitrate, effluent.tn),
        'tp': pct(descriptor.tp, effluent.tp),
    }


def pao_metrics(plant, C, rates):
    V = plant.volumes
    stoich = plant.stoich
    X_PAO = V @ C[:, IDX['X_PAO']]
    biomass = V @ (C[:, IDX['X_H']] + C[:, IDX['X_PAO']] + C[:, IDX['X_AUT']])
    anaerobic = np.array([z.zone_type.value == 'anaerobic' for z in plant.topology.zones])

    release = stoich.Y_PO4 * (V * anaerobic) @ rates[:, PIDX['storage_PHA']] / 1000.0
    aerobic_pp = V @ rates[:, PIDX['aerobic_storage_PP']] / 1000.0
    anoxic_pp = V @ rates[:, PIDX['anoxic_storage_PP']] / 1000.0
    uptake = aerobic_pp + anoxic_pp
    return PAOMetrics(
        pao_fraction=float(100.0 * X_PAO / biomass) if biomass > 0.0 else 0.0,
        pha_per_pao=float(V @ C[:, IDX['X_PHA']] / X_PAO) if X_PAO > 0.0 else 0.0,
        pp_per_pao=float(V @ C[:, IDX['X_PP']] / X_PAO) if X_PAO > 0.0 else 0.0,
        dpao_share=float(100.0 * anoxic_pp / uptake) if uptake > 0.0 else 0.0,
        p_release_rate=float(release),
        p_uptake_rate=float(uptake),
    )


def phosphorus_balance(plant, C, hyd, C_in, effluent_concs, previous_states=None, sample_interval=0.0):
    """
    Phosphorus loads around the plant (kg P/d). Influent P is the P of the
    fractionated influent, so closure checks the model rather than the
    fractionation.
    """
    stoich = plant.stoich
    influent_load = hyd.influent * total_phosphorus(C_in, stoich) / 1000.0
    effluent_load = hyd.effluent * total_phosphorus(effluent_concs, stoich) / 1000.0
    sludge_load = hyd.wastage * total_phosphorus(C[-1], stoich) / 1000.0
    chemical = hyd.wastage * P_CONTENT_MeP * C[-1, IDX['X_MeP']] / 1000.0

    inventory = float(plant.volumes @ total_phosphorus(C, stoich)) / 1000.0
    accumulation = 0.0
    if previous_states is not None and sample_interval > 0.0:
        before = float(plant.volumes @ total_phosphorus(previous_states, stoich)) / 1000.0
        accumulation = (inventory - before) / sample_interval

    out = effluent_load + sludge_load
    return PhosphorusBalance(
        influent_load=float(influent_load),
        effluent_load=float(effluent_load),
        sludge_load=float(sludge_load),
        chemical_sludge_load=float(chemical),
        inventory=inventory,
        accumulation=accumulation,
        closure=float(100.0 * out / influent_load) if influent_load > 0.0 else float('nan'),
        closure_with_storage=float(100.0 * (out + accumulation) / influent_load) if influent_load > 0.0 else float('nan'),
    )


def sludge_production(plant, C, hyd, influent, effluent):
    stoich = plant.stoich
    tss_last = float(total_suspended_solids(C[-1], stoich))
    vss = hyd.wastage * float(volatile_suspended_solids(C[-1], stoich)) / 1000.0
    cod_removed = (hyd.influent * influent.cod - hyd.effluent * effluent.cod) / 1000.0
    return SludgeProduction(
        tss=hyd.wastage * tss_last / 1000.0,
        vss=vss,
        p_content=float(100.0 * total_phosphorus(C[-1], stoich) / tss_last) if tss_last > 0.0 else 0.0,
        observed_yield=float(vss / cod_removed) if cod_removed > 0.0 else 0.0,
    )


def oxygen_demand(plant, C, hyd, C_in, rates):
    ext = plant.external_inflow(C, hyd, C_in)
    supply = plant.oxygen_supply(C, hyd, ext) / 1000.0
    nu_O2 = plant.model.stoichiometric_matrix[PIDX['aerobic_growth_AUT'], IDX['S_O2']]
    nitrification = -nu_O2 * plant.volumes @ rates[:, PIDX['aerobic_growth_AUT']] / 1000.0
    return OxygenDemand(
        total=float(supply.sum()),
        nitrification=float(nitrification),
        per_zone={z: float(s) for z, s in zip(plant.topology.zone_names, supply)},
    )


def zone_summaries(plant, C, hyd, supply):
    stoich = plant.stoich
    rows = []
    for i, zone in enumerate(plant.topology.zones):
        x = C[i]
        pao = x[IDX['X_PAO']]
        rows.append({
            'zone': zone.name,
            'type': zone.zone_type.value,
            'volume': zone.volume,
            'hrt_h': zone.volume / hyd.through[i] * 24.0,
            'mlss': float(total_suspended_solids(x, stoich)),
            'S_O2': x[IDX['S_O2']],
            'S_A': x[IDX['S_A']],
            'S_NH4': x[IDX['S_NH4']],
            'S_NO3': x[IDX['S_NO3']],
            'S_PO4': x[IDX['S_PO4']],
            'pp_per_pao': float(x[IDX['X_PP']] / pao) if pao > 0.0 else 0.0,
            'pha_per_pao': float(x[IDX['X_PHA']] / pao) if pao > 0.0 else 0.0,
            'oxygen_kg_d': supply.get(zone.name, 0.0),
        })
    return tuple(rows)


def compute_effluent_kpis(plant, times, trajectory, flows):
    """
    Flow-weighted effluent averages (rectangular, left endpoints) and 95th
    percentiles over a dynamic run.

    Returns a dict of averages and 95th percentiles (g/m^3).
    """
    stoich = plant.stoich
    times = np.asarray(times, float)
    if times.size < 2:
        return {}

    # ----- 1) Effluent series through the clarifier -----
    effluent = np.empty((times.size, trajectory.shape[2]))
    Q_e = np.empty(times.size)
    for k in range(times.size):
        hyd = plant.topology.hydraulics(float(flows[k]))
        effluent[k], _ = ideal_clarifier(trajectory[k, -1], hyd.clarifier_feed, hyd.ras,
                                         plant.topology.solids_capture)
        Q_e[k] = hyd.effluent

    # ----- 2) Derived series -----
    series = {
        'COD': total_cod(effluent),
        'BOD5': bod5(effluent, stoich),
        'TSS': total_suspended_solids(effluent, stoich),
        'NH4': effluent[:, IDX['S_NH4']],
        'TN': total_nitrogen(effluent, stoich),
        'TP': total_phosphorus(effluent, stoich),
        'PO4': effluent[:, IDX['S_PO4']],
    }

    # ----- 3) Flow-weighted averages (zero-order hold) -----
    w = Q_e[:-1] * np.diff(times)

    def flow_avg(values):
        return float((w * values[:-1]).sum() / w.sum())

    kpis = {f'{name}_avg': flow_avg(values) for name, values in series.items()}
    for name in ('NH4', 'TN', 'TSS', 'TP'):
        kpis[f'{name}_95'] = float(np.percentile(series[name], 95))
    return kpis


def build_report(plant, C, influent_fn, t, previous_states=None, sample_interval=0.0,
                 times=None, trajectory=None, flows=None):
    """
    Derives the plant report from the final zone states.

    Args:
        plant (ASM2dPlant): compiled plant of the run.
        C (np.ndarray): (n_zones, 18) final states.
        influent_fn: influent callable used in the run.
        t (float): final time (d).
        previous_states: states one sampling interval earlier (for the P inventory change).
        times, trajectory, flows: dynamic series; KPIs are computed when given.

    Returns:
        PlantReport
    """
    stoich = plant.stoich
    warnings = []
    Q, C_in = influent_fn(t)
    C_in = plant.influent_concs(C_in)
    hyd = plant.topology.hydraulics(Q)
    effluent_concs, _ = ideal_clarifier(C[-1], hyd.clarifier_feed, hyd.ras, plant.topology.solids_capture)

    influent = StreamQuality.from_state(C_in, stoich)
    effluent = StreamQuality.from_state(effluent_concs, stoich)
    rates = plant.model.rates(C, plant.gates)

    balance = phosphorus_balance(plant, C, hyd, C_in, effluent_concs, previous_states, sample_interval)
    dynamic = times is not None
    closure = balance.closure_with_storage if dynamic else balance.closure
    if not CLOSURE_RANGE[0] <= closure <= CLOSURE_RANGE[1]:
        message = f"phosphorus balance closure {closure:.1f}% outside {CLOSURE_RANGE[0]:.0f}-{CLOSURE_RANGE[1]:.0f}%"
        logger.warning(message)
        warnings.append(message)

    oxygen = oxygen_demand(plant, C, hyd, C_in, rates)
    return PlantReport(
        influent=influent,
        effluent=effluent,
        removal=removal_efficiencies(influent_fn.mean_descriptor(), influent, effluent),
        pao=pao_metrics(plant, C, rates),
        phosphorus=balance,
        sludge=sludge_production(plant, C, hyd, influent, effluent),
        oxygen=oxygen,
        zones=zone_summaries(plant, C, hyd, oxygen.per_zone),
        kpis=compute_effluent_kpis(plant, times, trajectory, flows) if dynamic else None,
        warnings=tuple(warnings),
    )


def write_summary_csv(report, out_csv="results/asm2d_summary.csv"):
    """Saves the report table to CSV and prints a short console summary."""
    directory = os.path.dirname(out_csv)
    if directory:
        os.makedirs(directory, exist_ok=True)
    df = report.to_frame()
    df.to_csv(out_csv, index=False)

    e, r = report.effluent, report.removal
    print("\n[ASM2d effluent]")
    print(f"COD  : {e.cod:8.2f} g/m3 | removal {r['cod']:6.1f}%")
    print(f"NH4-N: {e.nh4:8.2f} g/m3 | removal {r['nh4']:6.1f}%")
    print(f"TN   : {e.tn:8.2f} g/m3 | removal {r['tn']:6.1f}%")
    print(f"TP   : {e.tp:8.2f} g/m3 | removal {r['tp']:6.1f}%")
    print(f"P balance closure: {report.phosphorus.closure:.1f}%")
    print(f"CSV  saved → {out_csv}")
    return df
