"""
Command line interface

    mvpmm simulate  --config study.yaml --output results/ [--fit pgls ml pmm]
    mvpmm fit       --tree tree.nwk --traits traits.csv --output fit.nc
    mvpmm validate  --fit fit.nc --output report/
"""
import argparse
import logging
import os
import sys

from .core.config import DefaultConfig, load_config
from .core.framework import PhylogeneticMixedModelFramework
from .core.logging_config import setup_logging
from .core.pipeline import Pipeline

logger = logging.getLogger(__name__)


def _config(args, config=None):
    if config is None:
        config = load_config(args.config) if getattr(args, 'config', None) else DefaultConfig()
    if args.command == 'fit':
        # --output names the NetCDF file; figures go next to it
        config.output_directory = os.path.dirname(args.output) or '.'
    elif getattr(args, 'output', None):
        config.output_directory = args.output
    if getattr(args, 'seed', None) is not None:
        config.seed = args.seed
    if getattr(args, 'no_plots', False):
        config.save_plots = False
    return config


def _sampling_kwargs(args):
    kwargs = {}
    for name in ('draws', 'tune', 'chains', 'cores'):
        value = getattr(args, name, None)
        if value is not None:
            kwargs[name] = value
    return kwargs


def run_simulate(args, config=None):
    config = _config(args, config)
    pipeline = Pipeline(config)
    datasets = pipeline.run_simulation()
    logger.info("Simulated %d datasets.", len(datasets))
    if args.fit:
        summary = pipeline.run_analysis(methods=args.fit, **_sampling_kwargs(args))
        logger.info("Fitted %d datasets; %d summary rows.", len(pipeline.results), len(summary))
    pipeline.save_results(config.output_directory)
    return 0


def run_fit(args, config=None):
    config = _config(args, config)
    framework = PhylogeneticMixedModelFramework(config)
    framework.load_data(args.tree, args.traits, taxon_column=args.taxon_column)
    framework.fit(**_sampling_kwargs(args))
    framework.save_fit(args.output)
    summary = framework.pmm.posterior_analysis()
    print(summary.to_string())
    return 0


def run_validate(args, config=None):
    config = _config(args, config)
    framework = PhylogeneticMixedModelFramework(config)
    framework.load_fit(args.fit)
    results = framework.diagnose(rng=config.seed)
    os.makedirs(config.output_directory, exist_ok=True)
    results['convergence']['table'].to_csv(os.path.join(config.output_directory, "convergence.csv"))
    results['summary'].to_csv(os.path.join(config.output_directory, "posterior_summary.csv"))
    results['residuals'].to_csv(os.path.join(config.output_directory, "residuals.csv"))
    for trait, loo in results['loo'].items():
        loo['intervals'].to_csv(os.path.join(config.output_directory, f"loo_{trait}.csv"), index=False)
    for (mode, trait), check in results['ppc'].items():
        n = len(check['intervals'])
        print(f"PP-check {mode:<12} {trait}: {check['coverage']['cov90']}/{n} in 90%, "
              f"{check['coverage']['cov50']}/{n} in 50%")
    if config.save_plots:
        framework.visualize()
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog='mvpmm',
                                     description="Multivariate phylogenetic mixed models: simulation, "
                                                 "fitting and validation.")
    parser.add_argument('--log-level', default=None, help="Logging level (default from config).")
    parser.add_argument('--log-file', default=None, help="Also write logs to this file.")
    subparsers = parser.add_subparsers(dest='command', required=True)

    def sampler_options(p):
        p.add_argument('--draws', type=int, default=None)
        p.add_argument('--tune', type=int, default=None)
        p.add_argument('--chains', type=int, default=None)
        p.add_argument('--cores', type=int, default=None)

    sim = subparsers.add_parser('simulate', help="Simulate trees and trait datasets.")
    sim.add_argument('--config', default=None, help="YAML configuration file.")
    sim.add_argument('--output', default=None, help="Output directory.")
    sim.add_argument('--seed', type=int, default=None)
    sim.add_argument('--fit', nargs='*', choices=['pgls', 'ml', 'pmm'], default=None,
                     help="Also fit every dataset with these methods.")
    sampler_options(sim)
    sim.set_defaults(func=run_simulate)

    fit = subparsers.add_parser('fit', help="Fit the MV-PMM to a tree and trait table.")
    fit.add_argument('--tree', required=True, help="Newick tree file.")
    fit.add_argument('--traits', required=True, help="CSV trait table.")
    fit.add_argument('--taxon-column', default='animal')
    fit.add_argument('--config', default=None)
    fit.add_argument('--output', required=True, help="NetCDF file for the fit.")
    fit.add_argument('--seed', type=int, default=None)
    sampler_options(fit)
    fit.set_defaults(func=run_fit)

    val = subparsers.add_parser('validate', help="Diagnostics and predictive checks for a saved fit.")
    val.add_argument('--fit', required=True, help="NetCDF file written by 'mvpmm fit'.")
    val.add_argument('--config', default=None)
    val.add_argument('--output', default=None, help="Report directory.")
    val.add_argument('--seed', type=int, default=None)
    val.add_argument('--no-plots', action='store_true')
    val.set_defaults(func=run_validate)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config) if getattr(args, 'config', None) else DefaultConfig()
    setup_logging(args.log_level or config.log_level, args.log_file or config.log_file)
    try:
        return args.func(args, config)
    except (FileNotFoundError, ValueError, KeyError) as e:
        logger.error("%s", e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
