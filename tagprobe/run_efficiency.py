#!/usr/bin/env python3
"""
Tag-and-Probe Efficiency Pipeline

Runs one efficiency measurement (one sample, one efficiency kind) from the
selected-events file to the final efficiency grid.

Phases:
  1. Configuration
  2. Template store (data fits need the MC templates; MC runs rebuild them)
  3. Event aggregation (pass stream, then fail stream)
  4. Efficiency estimation per bin
  5. Outputs: summary, CSV table, fit log, figures, templates (MC)

Usage:
  python -m tagprobe.run_efficiency --config tagprobe/config/efficiency.toml --eff-type ID
  python -m tagprobe.run_efficiency --config my.toml --eff-type HLT --pu-dependence --verbose
"""

from __future__ import annotations

import argparse
import logging
import sys
from contextlib import ExitStack
from pathlib import Path
from typing import Iterable

from .modules.config import EfficiencyConfig, load_config
from .modules.efficiency_estimator import EfficiencyEstimator
from .modules.event_aggregator import EventAggregator, ProbeRecord
from .modules.exceptions import AnalysisError
from .modules.plotter import plot_bin_fits, plot_efficiency_grid
from .modules.probe_loader import count_entries, load_probe_records, selected_events_path
from .modules.reporter import output_paths, write_efficiency_table, write_fit_log, write_report
from .modules.results import EfficiencyGrid
from .modules.template_store import TemplateStore
from .utils.logging_config import setup_logging, suppress_warnings


class EfficiencyPipeline:
    """
    Orchestrates one efficiency run.

    Probe streams can be injected (tests, pre-filtered samples); by default
    they are read from the selected-events file of the configuration.
    """

    def __init__(self, config: EfficiencyConfig, make_plots: bool = True) -> None:
        self.config = config
        self.make_plots = make_plots
        self.logger = logging.getLogger("TagProbe.Pipeline")
        self.aggregator: EventAggregator | None = None
        self.grid: EfficiencyGrid | None = None
        self.outputs: dict[str, Path] = {}

    def run(
        self,
        pass_records: Iterable[ProbeRecord] | None = None,
        fail_records: Iterable[ProbeRecord] | None = None,
    ) -> EfficiencyGrid:
        config = self.config
        self._print_header()

        with ExitStack() as stack:
            template_store = None
            if config.use_templates:
                template_store = stack.enter_context(self._open_templates())

            self.aggregator = self._aggregate(pass_records, fail_records)

            print("\n" + "=" * 80)
            print(f"PHASE 4: EFFICIENCY ESTIMATION ({config.calc_method.value})")
            print("=" * 80)
            estimator = EfficiencyEstimator(config)
            self.grid = estimator.estimate_grid(self.aggregator, template_store)

        self.grid.assert_complete()
        self._write_outputs()
        self._print_summary()
        return self.grid

    # Phases
    # --------------------------------------------------------------------------

    def _print_header(self) -> None:
        config = self.config
        print("\n" + "=" * 80)
        print("PHASE 1: CONFIGURATION")
        print("=" * 80)
        print(f"Sample:            {config.sample_type.value}")
        print(f"Efficiency:        {config.eff_kind.value}")
        print(f"Method:            {config.calc_method.value}")
        print(f"Binning:           {config.et_binning.name} x {config.eta_binning.name}")
        print(f"Pileup reweight:   {config.pileup_reweight}")
        print(f"Pileup dependence: {config.pileup_dependence}")
        print(f"Output directory:  {config.run_dir}")

    def _open_templates(self) -> TemplateStore:
        print("\n" + "=" * 80)
        print("PHASE 2: TEMPLATE STORE")
        print("=" * 80)
        store = TemplateStore(self.config.templates_path, mode="r").open()
        try:
            store.check_scheme_info(self.config)
        except AnalysisError:
            store.close()
            raise
        print(f"✓ Using MC templates from {store.path}")
        return store

    def _aggregate(
        self,
        pass_records: Iterable[ProbeRecord] | None,
        fail_records: Iterable[ProbeRecord] | None,
    ) -> EventAggregator:
        print("\n" + "=" * 80)
        print("PHASE 3: EVENT AGGREGATION")
        print("=" * 80)

        if pass_records is None or fail_records is None:
            path = selected_events_path(self.config)
            n_pass, n_fail = count_entries(path)
            self.logger.info(f"Reading {path}: {n_pass} pass / {n_fail} fail entries")
            pass_records = load_probe_records(path, passed=True)
            fail_records = load_probe_records(path, passed=False)

        aggregator = EventAggregator(self.config)
        n_pass_ok = aggregator.process_pass_stream(pass_records)
        n_fail_ok = aggregator.process_fail_stream(fail_records)
        aggregator.freeze()
        self.logger.info(f"Accepted probes: {n_pass_ok} pass, {n_fail_ok} fail")

        print(aggregator.format_counters())
        return aggregator

    def _write_outputs(self) -> None:
        print("\n" + "=" * 80)
        print("PHASE 5: OUTPUTS")
        print("=" * 80)
        paths = output_paths(self.config)
        counters = self.aggregator.format_counters()

        self.outputs["report"] = write_report(self.grid, self.config, paths["report"], counters)
        self.outputs["table"] = write_efficiency_table(self.grid, paths["table"])
        self.outputs["fitlog"] = write_fit_log(self.grid, paths["fitlog"])

        if self.make_plots:
            self.outputs["figure"] = plot_bin_fits(self.grid, self.aggregator, paths["figure"])
            summary_plot = paths["figure"].with_name(paths["figure"].stem + "_vs_et.png")
            self.outputs["summary_plot"] = plot_efficiency_grid(self.grid, summary_plot)

        if not self.config.is_data:
            with TemplateStore(self.config.templates_path, mode="w") as store:
                store.write_scheme_info(self.config)
                store.save_all(self.aggregator.templates)
            self.outputs["templates"] = self.config.templates_path

        for name, path in self.outputs.items():
            print(f"✓ {name:<13} {path}")

    def _print_summary(self) -> None:
        print("\n" + "=" * 80)
        print("EFFICIENCY SUMMARY")
        print("=" * 80)
        for i, j, result in self.grid.items():
            if result.is_determined:
                text = f"{result.value:.4f} -{result.err_low:.4f} +{result.err_high:.4f}"
            else:
                text = "undetermined"
            flag = "" if result.status.value == "ok" else f"  [{result.status.value}]"
            print(f"  et{i} eta{j}: {text}{flag}")
        print("=" * 80 + "\n")


def main(argv: list[str] | None = None) -> int:
    """Main entry point with argument parsing"""
    parser = argparse.ArgumentParser(description="Tag-and-probe efficiency measurement")
    parser.add_argument("--config", required=True, help="Run configuration (TOML)")
    parser.add_argument(
        "--eff-type",
        required=True,
        help="Efficiency kind: RECO, ID, HLT, HLTleg1 or HLTleg2",
    )
    parser.add_argument(
        "--pu-dependence",
        action="store_true",
        help="Estimate per pileup stratum and combine (overrides [pileup].dependence)",
    )
    parser.add_argument(
        "--pu-reweight",
        action="store_true",
        help="Inputs carry pileup-reweighted weights (overrides [pileup].reweight)",
    )
    parser.add_argument("--no-plots", action="store_true", help="Skip the diagnostic figures")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    setup_logging(verbose=args.verbose)
    suppress_warnings()

    try:
        config = load_config(
            args.config,
            args.eff_type,
            pileup_dependence=True if args.pu_dependence else None,
            pileup_reweight=True if args.pu_reweight else None,
        )
        EfficiencyPipeline(config, make_plots=not args.no_plots).run()
    except AnalysisError as e:
        print(f"\nERROR: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
