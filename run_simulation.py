# run_simulation.py File

import argparse
import logging
import os

from asm2d_parameters import get_asm2d_params
from asm2d_simulation import SimulationConfig, SimulationMode, run_simulation
from asm2d_validation import write_summary_csv
from influent import InfluentDescriptor, InfluentSchedule
from reactor_topology import PRESET_NAMES, get_preset_topology

logger = logging.getLogger(__name__)


def get_reference_influent():
    """
    Prefermented municipal wastewater used for the reference A2O run
    (g/m^3, alkalinity mg CaCO3/L, flow m^3/d).
    """
    return InfluentDescriptor(
        flow=10000.0,
        cod=400.0,
        bod5=200.0,
        tss=200.0,
        vss=160.0,
        tkn=33.0,
        nh4=25.0,
        tp=8.0,
        po4=5.7,
        vfa=150.0,
        alkalinity=300.0,
    )


def build_parser():
    ap = argparse.ArgumentParser(description="Simulate an ASM2d activated sludge plant with biological P removal.")
    ap.add_argument("--preset", choices=PRESET_NAMES, default="a2o", help="Process configuration")
    ap.add_argument("--volume", type=float, default=9000.0, help="Total bioreactor volume (m3)")
    ap.add_argument("--srt", type=float, default=15.0, help="Solids retention time (d)")
    ap.add_argument("--temperature", type=float, default=20.0, help="Operating temperature (deg C)")
    ap.add_argument("--ras", type=float, default=None, help="RAS ratio (preset default if omitted)")
    ap.add_argument("--ir", type=float, default=None, help="Internal recycle ratio (preset default if omitted)")
    ap.add_argument("--do", type=float, default=2.0, help="DO setpoint of aerobic zones (g/m3)")
    ap.add_argument("--no-dpao", action="store_true", help="Disable denitrifying PAO activity")
    ap.add_argument("--metal-dose", type=float, default=0.0,
                    help="Metal hydroxide dose (g/m3 influent); enables chemical P precipitation when > 0")

    ref = get_reference_influent()
    ap.add_argument("--flow", type=float, default=ref.flow, help="Influent flow (m3/d)")
    ap.add_argument("--cod", type=float, default=ref.cod)
    ap.add_argument("--nh4", type=float, default=ref.nh4)
    ap.add_argument("--tkn", type=float, default=ref.tkn)
    ap.add_argument("--tp", type=float, default=ref.tp)
    ap.add_argument("--po4", type=float, default=ref.po4)
    ap.add_argument("--vfa", type=float, default=ref.vfa)
    ap.add_argument("--alkalinity", type=float, default=ref.alkalinity, help="mg CaCO3/L")
    ap.add_argument("--influent-file", type=str, default=None,
                    help="CSV with a 'time' column and influent descriptor columns (dynamic mode)")

    ap.add_argument("--mode", choices=[m.value for m in SimulationMode], default=SimulationMode.STEADY_STATE.value)
    ap.add_argument("--end-time", type=float, default=None, help="Horizon (d)")
    ap.add_argument("--time-step", type=float, default=None, help="Integration step (d)")
    ap.add_argument("--output", type=str, default=None, help="Directory for CSV results")
    ap.add_argument("--verbose", action="store_true")
    return ap


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    # --- 1. Plant configuration ---
    overrides = dict(srt=args.srt, temperature=args.temperature,
                     enable_dpao=not args.no_dpao,
                     enable_chem_p=args.metal_dose > 0.0, metal_dose=args.metal_dose)
    if args.ras is not None:
        overrides['ras_ratio'] = args.ras
    if args.ir is not None:
        overrides['internal_recycle_ratio'] = args.ir
    topology = get_preset_topology(args.preset, total_volume=args.volume, do_setpoint=args.do, **overrides)

    # --- 2. Influent ---
    stoich_params, kinetic_params, temperature_coefficients = get_asm2d_params()
    if args.influent_file:
        influent = InfluentSchedule.from_csv(args.influent_file, stoich_params=stoich_params)
    else:
        influent = InfluentDescriptor(flow=args.flow, cod=args.cod, nh4=args.nh4, tkn=args.tkn, tp=args.tp,
                                      po4=args.po4, vfa=args.vfa, alkalinity=args.alkalinity)

    # --- 3. Run ---
    config_kwargs = {}
    if args.end_time is not None:
        config_kwargs['end_time'] = args.end_time
    if args.time_step is not None:
        config_kwargs['time_step'] = args.time_step
    config = SimulationConfig(mode=args.mode, **config_kwargs)
    result = run_simulation(topology, influent, config, stoich_params, kinetic_params, temperature_coefficients)

    # --- 4. Report ---
    print(result.report.zone_frame().round(3).to_string())
    out_dir = args.output or 'results'
    write_summary_csv(result.report, os.path.join(out_dir, f"asm2d_{args.preset}_summary.csv"))
    if config.mode is SimulationMode.DYNAMIC:
        result.to_frame().to_csv(os.path.join(out_dir, f"asm2d_{args.preset}_timeseries.csv"), index=False)
        result.rates_frame().to_csv(os.path.join(out_dir, f"asm2d_{args.preset}_rates.csv"), index=False)
    logger.info("Results written to %s", out_dir)
    if result.report.kpis:
        for k, v in result.report.kpis.items():
            print(f"{k}: {v:.3f}")
    for message in result.diagnostics.warnings:
        print("WARN", message)
    print(f"{result.metadata.steps} steps in {result.metadata.wall_time:.2f} s")
    return result


if __name__ == '__main__':
    main()
