"""Command-line entry point: ``odid-screen``."""
from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional, Sequence

from . import io
from .pipeline import PipelineConfig, PipelineResult, run_pipeline

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Differential abundance and ODID estimation for timecourse selection screens'
    )

    parser.add_argument(
        '--counts',
        required=True,
        help='Path to count table (CSV, TSV or Excel) with sample and sequence columns',
    )
    parser.add_argument(
        '--results_path',
        required=True,
        help='Path to output directory',
    )
    parser.add_argument(
        '--calibration',
        default=None,
        help='Path to OD calibration table (optional; built-in measurements otherwise)',
    )
    parser.add_argument(
        '--sequence_metadata',
        default=None,
        help='Path to feature -> sequence table (optional)',
    )
    parser.add_argument(
        '--min_total_count',
        type=int,
        default=2,
        help='Drop features with fewer total counts',
    )
    parser.add_argument(
        '--alternative',
        choices=['less', 'greater', 'two-sided'],
        default='less',
        help='Alternative hypothesis for the contrast tests',
    )
    parser.add_argument(
        '--alpha',
        type=float,
        default=0.1,
        help='Target FDR for independent filtering',
    )
    parser.add_argument(
        '--max_iter',
        type=int,
        default=100,
        help='Iteration cap for each GLM fit',
    )
    parser.add_argument(
        '--n_jobs',
        type=int,
        default=1,
        help='Number of worker processes',
    )
    parser.add_argument(
        '--no_dedupe',
        action='store_true',
        help='Keep all features sharing an amino-acid sequence',
    )
    parser.add_argument(
        '--plots',
        action='store_true',
        help='Write volcano, dispersion and ODID heatmap figures',
    )
    parser.add_argument(
        '--format',
        choices=['excel', 'csv'],
        default='csv',
        help='Output format',
    )
    parser.add_argument(
        '-d', '--debug',
        action='store_true',
        help='Enable debug mode',
    )
    return parser


def write_outputs(result: PipelineResult, results_path: Path, fmt: str, plots: bool) -> None:
    suffix = 'xlsx' if fmt == 'excel' else 'csv'
    io.write_results(result.results, results_path / f'odid_results.{suffix}', fmt=fmt)
    io.write_sample_metadata(result.fit.sample_meta, results_path / 'sample_metadata.csv')

    if plots:
        # only needed for figures
        import matplotlib
        matplotlib.use('Agg')
        import matplotlib.pyplot as plt

        from .plots import dispersion_plot, odid_heatmap, volcano_plot

        primary = max(result.contrasts)
        fig, _ = volcano_plot(
            result.results,
            x_col=f'log2FoldChange_t{primary}',
            q_col=f'padj_t{primary}',
            title=f't{primary} vs baseline',
            outpath=results_path / 'volcano.png',
        )
        plt.close(fig)
        fig, _ = dispersion_plot(result.fit, outpath=results_path / 'dispersion.png')
        plt.close(fig)
        if not result.results.empty:
            fig, _, _ = odid_heatmap(
                result.results,
                timepoints=result.fit.timepoints,
                q_col=f'padj_t{primary}',
                outpath=results_path / 'odid_heatmap.png',
            )
            plt.close(fig)


def main(argv: Optional[Sequence[str]] = None):
    """Command-line interface for the ODID screen pipeline."""
    args = build_parser().parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    counts_table = io.load_counts_table(args.counts)
    calibration = io.load_calibration(args.calibration) if args.calibration else None
    sequence_meta = (
        io.load_sequence_metadata(args.sequence_metadata) if args.sequence_metadata else None
    )
    config = PipelineConfig(
        min_total_count=args.min_total_count,
        alternative=args.alternative,
        alpha=args.alpha,
        max_iter=args.max_iter,
        n_jobs=args.n_jobs,
        dedupe=not args.no_dedupe,
    )

    result = run_pipeline(
        counts_table,
        calibration=calibration,
        sequence_meta=sequence_meta,
        config=config,
    )

    results_path = Path(args.results_path)
    results_path.mkdir(parents=True, exist_ok=True)
    write_outputs(result, results_path, args.format, args.plots)
    logger.info(f"Reported {len(result.results)} features to {results_path}")


if __name__ == '__main__':
    main()
