"""
Simulation tests: integrator, diagnostics, reporting and plant scenarios
"""
import dataclasses
import logging

import numpy as np
import pandas as pd
import pytest

from asm2d_parameters import ConfigurationError, KineticParameters, StoichiometricParameters
from asm2d_simulation import (DIVERGENCE_LIMIT, ASM2dPlant, SimulationConfig, SimulationMode, clamp_negative,
                              has_diverged, rk4_step, run_simulation)
from asm2d_state import IDX, N_COMPONENTS, StateVector, total_phosphorus
from asm2d_validation import CLOSURE_RANGE, write_summary_csv
from ASM2d_Processes import N_PROCESSES, PIDX, PROCESS_NAMES, calculate_process_rates
from influent import InfluentDescriptor, InfluentSchedule
from reactor_topology import ReactorTopology, ReactorZone, get_preset_topology
from run_simulation import get_reference_influent, main


# ── Common fixtures ──────────────────────────────────────────────

def aerobic_tank(**kwargs):
    """Single aerated zone with return sludge, the smallest closed plant."""
    settings = dict(srt=10.0, ras_ratio=1.0)
    settings.update(kwargs)
    return ReactorTopology(zones=(ReactorZone('aer', 'aerobic', 1500.0),), **settings)


@pytest.fixture
def small_influent():
    return InfluentDescriptor(flow=1000.0, cod=300.0, nh4=20.0, tp=6.0, vfa=20.0, alkalinity=300.0)


@pytest.fixture(scope='module')
def short_dynamic_run():
    topology = get_preset_topology('a2o', srt=15.0)
    config = SimulationConfig.dynamic(end_time=0.1, report_interval=0.025)
    return run_simulation(topology, get_reference_influent(), config)


# ══════════════════════════════════════════════════════════════
#  Integrator building blocks
# ══════════════════════════════════════════════════════════════

class TestIntegrator:
    def test_rk4_exponential_decay(self):
        x = np.array([1.0])
        for _ in range(100):
            x = rk4_step(x, 0.01, lambda c: -c)
        assert x[0] == pytest.approx(np.exp(-1.0), rel=1e-8)

    def test_clamp_negative(self):
        C = np.array([[1.0, -2.0, 0.0], [-0.5, 3.0, -1e-12]])
        counts = np.zeros(3, dtype=int)
        assert clamp_negative(C, counts) == 3
        assert np.all(C >= 0.0)
        assert counts.tolist() == [1, 1, 1]
        assert C[1, 1] == 3.0

    def test_nothing_to_clamp(self):
        C = np.ones((2, 3))
        counts = np.zeros(3, dtype=int)
        assert clamp_negative(C, counts) == 0
        assert counts.sum() == 0

    def test_divergence_check(self):
        assert not has_diverged(np.full((2, 3), 1e4))
        assert has_diverged(np.array([[1.0, np.nan]]))
        assert has_diverged(np.array([[1.0, np.inf]]))
        assert has_diverged(np.array([[1.0, 10.0 * DIVERGENCE_LIMIT]]))


class TestSimulationConfig:
    def test_mode_defaults(self):
        steady = SimulationConfig.steady_state()
        assert steady.end_time == 60.0 and steady.report_interval == 1.0
        dynamic = SimulationConfig.dynamic()
        assert dynamic.end_time == 1.0
        assert dynamic.steps_per_report == 15
        assert dynamic.n_steps == 1440

    def test_dynamic_horizon_follows_start_time(self):
        config = SimulationConfig.dynamic(start_time=5.0)
        assert config.end_time == 6.0
        assert config.n_steps == 1440

    def test_horizon_must_be_whole_steps(self):
        with pytest.raises(ConfigurationError):
            SimulationConfig.dynamic(end_time=0.01)
        assert SimulationConfig.dynamic(end_time=0.1).n_steps == 144

    def test_mode_from_string(self):
        assert SimulationConfig(mode='dynamic').mode is SimulationMode.DYNAMIC

    @pytest.mark.parametrize('kwargs', [
        dict(mode='batch'),
        dict(time_step=0.0),
        dict(start_time=5.0, end_time=1.0),
        dict(report_interval=1e-6),
        dict(tolerance=0.0),
        dict(end_time=0.0005),
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigurationError):
            SimulationConfig(**kwargs)


class TestPlant:
    def test_do_pinned_per_zone_type(self):
        topology = get_preset_topology('a2o', do_setpoint=1.5)
        plant = ASM2dPlant(topology, KineticParameters(), StoichiometricParameters())
        C = plant.initial_states(None)
        assert C[:, IDX['S_O2']].tolist() == [0.0, 0.0, 1.5]

    def test_setpoint_capped_at_saturation(self):
        topology = aerobic_tank(temperature=30.0)
        topology = dataclasses.replace(topology, zones=(ReactorZone('aer', 'aerobic', 1500.0, do_setpoint=12.0),))
        plant = ASM2dPlant(topology, KineticParameters(), StoichiometricParameters())
        assert plant.do_targets[0] < 8.0
        assert any('saturation' in w for w in plant.warnings)

    def test_oxygen_not_integrated(self, small_influent):
        topology = aerobic_tank()
        plant = ASM2dPlant(topology, KineticParameters(), StoichiometricParameters())
        C = plant.initial_states(None)
        hyd = plant.hydraulics(small_influent.flow)
        ext = plant.external_inflow(C, hyd, np.zeros(N_COMPONENTS))
        assert np.all(plant.derivatives(C, hyd, ext)[:, IDX['S_O2']] == 0.0)
        assert plant.oxygen_supply(C, hyd, ext)[0] > 0.0

    def test_hydraulics_logged_once_per_flow(self, small_influent, caplog):
        plant = ASM2dPlant(aerobic_tank(), KineticParameters(), StoichiometricParameters())
        with caplog.at_level(logging.DEBUG, logger='asm2d_simulation'):
            plant.hydraulics(small_influent.flow)
            plant.hydraulics(small_influent.flow)
        assert caplog.text.count('Hydraulics at Q=1000.0') == 1

    def test_initial_state_per_zone(self):
        topology = get_preset_topology('ao')
        plant = ASM2dPlant(topology, KineticParameters(), StoichiometricParameters())
        with pytest.raises(ConfigurationError):
            plant.initial_states({'anaerobic': StateVector()})


# ══════════════════════════════════════════════════════════════
#  run_simulation() behaviour
# ══════════════════════════════════════════════════════════════

class TestDynamicRun:
    def test_states_non_negative(self, short_dynamic_run):
        assert np.all(short_dynamic_run.trajectory >= 0.0)
        for state in short_dynamic_run.final_states.values():
            assert all(v >= 0.0 for v in state.as_dict().values())

    def test_snapshot_grid(self, short_dynamic_run):
        assert np.allclose(short_dynamic_run.times, [0.0, 0.025, 0.05, 0.075, 0.1])
        assert short_dynamic_run.trajectory.shape == (5, 3, N_COMPONENTS)
        assert short_dynamic_run.influent_flows.shape == (5,)
        assert short_dynamic_run.diagnostics.converged is None

    def test_results_read_only(self, short_dynamic_run):
        assert not short_dynamic_run.trajectory.flags.writeable
        assert not short_dynamic_run.process_rates.flags.writeable
        with pytest.raises(dataclasses.FrozenInstanceError):
            short_dynamic_run.metadata = None

    def test_effluent_kpis(self, short_dynamic_run):
        kpis = short_dynamic_run.report.kpis
        for key in ('COD_avg', 'NH4_avg', 'TP_avg', 'NH4_95', 'TN_95'):
            assert key in kpis
        assert kpis['NH4_95'] >= 0.0

    def test_frames(self, short_dynamic_run):
        df = short_dynamic_run.to_frame()
        assert len(df) == 5 * 3
        assert list(df.columns[:2]) == ['time', 'zone']
        assert list(short_dynamic_run.final_frame().index) == ['anaerobic', 'anoxic', 'aerobic']
        rates = short_dynamic_run.rates_frame()
        assert len(rates) == 5 * 3
        assert list(rates.columns) == ['time', 'zone'] + PROCESS_NAMES

    def test_process_rates_per_snapshot(self, short_dynamic_run):
        rates = short_dynamic_run.process_rates
        assert rates.shape == (5, 3, N_PROCESSES)
        assert np.all(rates >= 0.0)
        # zone order anaerobic, anoxic, aerobic
        assert np.all(rates[:, 0, PIDX['aerobic_growth_AUT']] == 0.0)
        assert np.all(rates[:, 2, PIDX['aerobic_growth_AUT']] > 0.0)
        assert np.all(rates[:, 0, PIDX['storage_PHA']] > 0.0)
        assert short_dynamic_run.diagnostics.time_to_steady_state is None

    def test_no_divergence_at_default_step(self, short_dynamic_run):
        assert short_dynamic_run.diagnostics.diverged is False
        assert short_dynamic_run.metadata.end_time == pytest.approx(0.1)

    def test_storage_term_closes_phosphorus_balance(self, short_dynamic_run):
        p = short_dynamic_run.report.phosphorus
        volumes = get_preset_topology('a2o', srt=15.0).volumes
        before = volumes @ total_phosphorus(short_dynamic_run.trajectory[-2], StoichiometricParameters()) / 1000.0
        assert p.accumulation == pytest.approx((p.inventory - before) / 0.025, rel=1e-6)
        assert p.closure_with_storage == pytest.approx(
            100.0 * (p.effluent_load + p.sludge_load + p.accumulation) / p.influent_load)
        outside = not CLOSURE_RANGE[0] <= p.closure_with_storage <= CLOSURE_RANGE[1]
        assert outside == any('phosphorus balance closure' in w for w in short_dynamic_run.diagnostics.warnings)

    def test_deterministic(self, short_dynamic_run):
        topology = get_preset_topology('a2o', srt=15.0)
        config = SimulationConfig.dynamic(end_time=0.1, report_interval=0.025)
        again = run_simulation(topology, get_reference_influent(), config)
        assert np.array_equal(again.trajectory, short_dynamic_run.trajectory)

    def test_parameters_not_modified(self, small_influent):
        kinetic, stoich = KineticParameters(), StoichiometricParameters()
        run_simulation(aerobic_tank(temperature=12.0), small_influent, SimulationConfig.dynamic(end_time=0.05),
                       stoich_params=stoich, kinetic_params=kinetic)
        assert kinetic == KineticParameters()
        assert stoich == StoichiometricParameters()

    def test_time_varying_influent(self):
        table = pd.DataFrame({'time': [0.0, 0.05, 0.1], 'flow': [8000.0, 12000.0, 9000.0],
                              'cod': [350.0, 450.0, 380.0], 'nh4': [22.0, 28.0, 24.0], 'tp': [7.0, 9.0, 8.0]})
        result = run_simulation(get_preset_topology('a2o'), InfluentSchedule(table),
                                SimulationConfig.dynamic(end_time=0.1, report_interval=0.05))
        assert result.influent_flows.tolist() == pytest.approx([8000.0, 12000.0, 9000.0])


class TestRunErrors:
    def test_steady_state_needs_constant_influent(self):
        table = pd.DataFrame({'time': [0.0, 1.0], 'flow': [8000.0, 12000.0],
                              'cod': [350.0, 450.0], 'nh4': [22.0, 28.0], 'tp': [7.0, 9.0]})
        with pytest.raises(ConfigurationError):
            run_simulation(get_preset_topology('a2o'), InfluentSchedule(table), SimulationConfig.steady_state())

    def test_wastage_exceeding_flow(self):
        small = InfluentDescriptor(flow=100.0, cod=300.0, nh4=20.0, tp=6.0)
        with pytest.raises(ConfigurationError):
            run_simulation(aerobic_tank(srt=5.0), small, SimulationConfig.dynamic(end_time=0.05))


class TestDiagnostics:
    def test_short_steady_run_not_converged(self, small_influent):
        config = SimulationConfig.steady_state(end_time=2.0)
        result = run_simulation(aerobic_tank(), small_influent, config)
        assert result.diagnostics.converged is False
        assert result.diagnostics.max_relative_change > config.tolerance
        assert any('steady state not reached' in w for w in result.diagnostics.warnings)
        assert result.times.shape == (1,)
        assert result.process_rates.shape == (1, 1, N_PROCESSES)
        assert result.diagnostics.time_to_steady_state is None

    def test_time_to_steady_state(self, small_influent):
        config = SimulationConfig.steady_state(end_time=10.0, tolerance=0.5)
        result = run_simulation(aerobic_tank(), small_influent, config)
        d = result.diagnostics
        assert d.converged is True
        assert d.time_to_steady_state is not None
        assert 1.0 <= d.time_to_steady_state <= 10.0
        # reported on the 1 d sampling grid
        assert d.time_to_steady_state == pytest.approx(round(d.time_to_steady_state))

    def test_clamped_concentrations_reported(self, small_influent):
        # nitrification near zero order drains ammonia faster than one step resolves
        kinetic = KineticParameters(K_NH4_AUT=1e-6)
        result = run_simulation(aerobic_tank(), small_influent, SimulationConfig.dynamic(end_time=0.5),
                                kinetic_params=kinetic)
        d = result.diagnostics
        assert d.clamp_events > 0
        assert d.clamp_counts['S_NH4'] > 0
        assert sum(d.clamp_counts.values()) == d.clamp_events
        assert f"{d.clamp_events} negative concentrations clamped to zero" in d.warnings
        assert np.all(result.trajectory >= 0.0)
        assert d.diverged is False

    def test_unstable_step_stops_integration(self, small_influent):
        # a 10 m3 zone flushed 200 times a day cannot be integrated with a 0.05 d step
        topology = ReactorTopology(zones=(ReactorZone('aer', 'aerobic', 10.0),), srt=10.0, ras_ratio=1.0)
        config = SimulationConfig.dynamic(end_time=1.0, time_step=0.05, report_interval=0.05)
        result = run_simulation(topology, small_influent, config)
        d = result.diagnostics
        assert d.diverged is True
        assert any('integration diverged' in w for w in d.warnings)
        assert result.metadata.steps < 20
        assert result.metadata.end_time < 1.0
        assert result.times[-1] == result.metadata.end_time
        assert np.all(np.isfinite(result.trajectory))
        assert result.trajectory.max() <= DIVERGENCE_LIMIT

    def test_closure_warning_while_inventory_drains(self, small_influent):
        # one day from the generic start state the sludge P inventory is still being wasted
        result = run_simulation(aerobic_tank(), small_influent, SimulationConfig.steady_state(end_time=1.0))
        p = result.report.phosphorus
        assert p.closure > CLOSURE_RANGE[1]
        assert any('phosphorus balance closure' in w for w in result.diagnostics.warnings)
        assert abs(p.closure_with_storage - 100.0) < abs(p.closure - 100.0)

    def test_dynamic_run_checks_closure_with_storage(self, small_influent):
        config = SimulationConfig.dynamic(end_time=0.5, report_interval=1.0 / 1440.0)
        result = run_simulation(aerobic_tank(), small_influent, config)
        p = result.report.phosphorus
        assert p.closure > CLOSURE_RANGE[1]
        assert CLOSURE_RANGE[0] <= p.closure_with_storage <= CLOSURE_RANGE[1]
        assert not any('phosphorus balance closure' in w for w in result.diagnostics.warnings)

    def test_chemical_precipitation_lowers_phosphate(self, small_influent):
        config = SimulationConfig.dynamic(end_time=1.0, report_interval=0.5)
        base = run_simulation(aerobic_tank(), small_influent, config)
        dosed = run_simulation(aerobic_tank(enable_chem_p=True, metal_dose=20.0), small_influent, config)
        assert dosed.zone_state('aer').S_PO4 < base.zone_state('aer').S_PO4
        assert dosed.zone_state('aer').X_MeP > 0.0
        assert base.zone_state('aer').X_MeP == 0.0

    def test_acceptor_starvation(self):
        # anoxic zone, nitrate-free influent that still carries substrate, no recycle
        topology = ReactorTopology(zones=(ReactorZone('anox', 'anoxic', 1000.0),), srt=10.0, ras_ratio=0.0)
        influent = InfluentDescriptor(flow=10000.0, cod=400.0, nh4=25.0, tp=8.0, nitrate=0.0)
        config = SimulationConfig.dynamic(end_time=0.1, report_interval=0.01)
        result = run_simulation(topology, influent, config)

        def anoxic_growth(x):
            rho = calculate_process_rates(x, KineticParameters(), zone_type='anoxic')
            return rho['anoxic_growth_H_on_SF'] + rho['anoxic_growth_H_on_SA']

        start = anoxic_growth(result.trajectory[0, 0])
        end = anoxic_growth(result.trajectory[-1, 0])
        assert start > 0.0
        assert end < 0.01 * start
        assert result.zone_state('anox').S_O2 == 0.0


# ══════════════════════════════════════════════════════════════
#  Plant scenarios (steady state)
# ══════════════════════════════════════════════════════════════

@pytest.fixture(scope='module')
def a2o_baseline():
    topology = get_preset_topology('a2o', total_volume=9000.0, srt=15.0, temperature=20.0)
    return run_simulation(topology, get_reference_influent(), SimulationConfig.steady_state())


class TestA2OScenario:
    def test_ammonia_removal(self, a2o_baseline):
        assert a2o_baseline.report.removal['nh4'] >= 70.0

    def test_phosphorus_removal(self, a2o_baseline):
        assert a2o_baseline.report.removal['tp'] >= 70.0

    def test_phosphorus_closure(self, a2o_baseline):
        closure = a2o_baseline.report.phosphorus.closure
        assert CLOSURE_RANGE[0] <= closure <= CLOSURE_RANGE[1]

    def test_pao_cycle_active(self, a2o_baseline):
        pao = a2o_baseline.report.pao
        assert pao.p_release_rate > 0.0
        assert pao.p_uptake_rate > 0.0
        assert 0.0 < pao.pp_per_pao < 0.35

    def test_oxygen_demand_only_in_aerated_zone(self, a2o_baseline):
        per_zone = a2o_baseline.report.oxygen.per_zone
        assert per_zone['anaerobic'] == per_zone['anoxic'] == 0.0
        assert per_zone['aerobic'] > 0.0
        assert 0.0 < a2o_baseline.report.oxygen.nitrification < a2o_baseline.report.oxygen.total

    def test_summary_csv(self, a2o_baseline, tmp_path):
        out = tmp_path / 'summary.csv'
        df = write_summary_csv(a2o_baseline.report, str(out))
        assert out.exists()
        assert set(df.columns) == {'section', 'metric', 'value'}


def test_vfa_starvation_silences_pao(a2o_baseline):
    # no acetate in the feed and no fermentation: the anaerobic zone has nothing to store
    starved = dataclasses.replace(get_reference_influent(), vfa=0.0)
    topology = get_preset_topology('a2o', total_volume=9000.0, srt=15.0, temperature=20.0)
    result = run_simulation(topology, starved, SimulationConfig.steady_state(end_time=30.0),
                            kinetic_params=KineticParameters(q_fe=0.0))
    baseline = a2o_baseline.report.pao
    assert result.report.pao.p_release_rate < 0.05 * baseline.p_release_rate
    assert result.report.pao.p_uptake_rate < 0.05 * baseline.p_uptake_rate


def test_fermentation_partly_replaces_missing_vfa(a2o_baseline):
    starved = dataclasses.replace(get_reference_influent(), vfa=0.0)
    topology = get_preset_topology('a2o', total_volume=9000.0, srt=15.0, temperature=20.0)
    result = run_simulation(topology, starved, SimulationConfig.steady_state())
    release = result.report.pao.p_release_rate
    assert 0.0 < release < a2o_baseline.report.pao.p_release_rate


def test_closed_tank_phosphorus_balance(small_influent):
    result = run_simulation(aerobic_tank(), small_influent, SimulationConfig.steady_state(end_time=50.0))
    if result.diagnostics.converged:
        assert result.diagnostics.time_to_steady_state <= 50.0
    p = result.report.phosphorus
    assert p.effluent_load + p.sludge_load == pytest.approx(p.influent_load, rel=0.05)


def test_cli_dynamic_run(tmp_path):
    result = main(['--preset', 'ao', '--mode', 'dynamic', '--end-time', '0.05', '--output', str(tmp_path)])
    assert result.metadata.mode is SimulationMode.DYNAMIC
    assert (tmp_path / 'asm2d_ao_summary.csv').exists()
    assert (tmp_path / 'asm2d_ao_timeseries.csv').exists()
    assert (tmp_path / 'asm2d_ao_rates.csv').exists()
