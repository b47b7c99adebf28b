"""
arrayde run command - one study from raw files to a differential expression table.

Usage:
    arrayde run --accession GSE1234 --platform single --raw data/raw \\
        --metadata data/GSE1234_samples.tsv --annotation data/GPL570.annot.tsv \\
        --group "re:normal|healthy=control" --group "tumou?r=case" \\
        --contrast case-control --output results/GSE1234.de.tsv

Exit status:
    0  success
    1  a pipeline stage failed (stderr names the stage)
    2  invalid arguments or configuration
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from arrayde.cli._validators import _fraction, _non_negative_float, _p_threshold, _positive_int
from arrayde.cli.config import VALID_FDR_METHODS, VALID_NORMALIZATIONS

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STAGE_FAILED = 1
EXIT_USAGE = 2


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the run subcommand."""
    parser = subparsers.add_parser(
        "run",
        help="Run the full pipeline for one study",
        description="Background correction, normalization, cleaning, group assignment, "
                    "annotation and moderated differential expression for one study",
    )

    parser.add_argument("--config", "-c", type=Path, default=None,
                        help="Path to YAML/JSON config file (optional, CLI args override config values)")

    # Inputs
    parser.add_argument("--accession", "-a", default=None,
                        help="Study accession (sub-directory of --raw unless --flat)")
    parser.add_argument("--platform", "-p", default=None,
                        choices=["single", "two-channel", "bead"],
                        help="Platform family of the raw files")
    parser.add_argument("--raw", type=Path, default=None,
                        help="Directory of raw per-sample files")
    parser.add_argument("--flat", action="store_true",
                        help="Raw files live directly in --raw (no accession sub-directory)")
    parser.add_argument("--pattern", default="*",
                        help="Glob selecting raw files (default: *)")
    parser.add_argument("--targets", type=Path, default=None,
                        help="Two-channel targets table (array, Cy3, Cy5)")
    parser.add_argument("--metadata", "-m", type=Path, default=None,
                        help="Sample metadata table (first column or --sample-column = sample id)")
    parser.add_argument("--sample-column", default=None,
                        help="Metadata column holding sample ids")

    # Annotation
    parser.add_argument("--annotation", type=Path, default=None,
                        help="Platform annotation table (probe, gene symbol, gene id)")
    parser.add_argument("--probe-column", default=None,
                        help="Annotation column with probe ids (default: first column)")
    parser.add_argument("--symbol-column", default="gene_symbol",
                        help="Annotation column with gene symbols (default: gene_symbol)")
    parser.add_argument("--gene-id-column", default="gene_id",
                        help="Annotation column with gene ids (default: gene_id)")
    parser.add_argument("--mygene", action="store_true",
                        help="Resolve probes through mygene.info when no --annotation is given")
    parser.add_argument("--annotation-cache-dir", type=Path, default=None,
                        help="Cache directory for mygene.info lookups")

    # Correction / cleaning
    parser.add_argument("--background", choices=["none", "offset", "normexp"], default=None,
                        help="Background correction (default per platform)")
    parser.add_argument("--normalization", choices=VALID_NORMALIZATIONS, default=None,
                        help="Normalization (default: quantile; loess+scale for two-channel)")
    parser.add_argument("--offset", type=_non_negative_float, default=None,
                        help="Floor after background correction (default: 16 for bead, else 0)")
    parser.add_argument("--no-low-expression-filter", dest="filter_low_expression",
                        action="store_false", default=True,
                        help="Keep rows below the low-expression quantile")
    parser.add_argument("--low-expression-quantile", type=_fraction, default=0.25,
                        help="Quantile of row means used as low-expression threshold (default: 0.25)")

    # Groups and contrasts
    parser.add_argument("--group", action="append", default=None, metavar="PATTERN=LABEL",
                        help="Group rule, first match wins; prefix pattern with 're:' for a regex")
    parser.add_argument("--default-group", default=None,
                        help="Label for samples that match no rule")
    parser.add_argument("--group-field", action="append", default=None,
                        help="Metadata column searched by group rules (default: all columns)")
    parser.add_argument("--exclude-group", action="append", default=None,
                        help="Label whose samples are left out of the analysis")
    parser.add_argument("--contrast", dest="contrasts", action="append", default=None, metavar="EXPR",
                        help="Contrast, e.g. 'case-control' or 'AB=(A+B)/2-control' (repeatable)")

    # Decisions
    parser.add_argument("--p-value", type=_p_threshold, default=0.05,
                        help="Adjusted p-value threshold for up/down calls (default: 0.05)")
    parser.add_argument("--lfc", type=_non_negative_float, default=0.0,
                        help="Minimum |log2 fold change| for up/down calls (default: 0)")
    parser.add_argument("--fdr-method", choices=VALID_FDR_METHODS, default="BH",
                        help="Multiple testing correction (default: BH)")

    # Output / execution
    parser.add_argument("--output", "-o", type=Path, default=None,
                        help="Result table path (tab-delimited)")
    parser.add_argument("--write-matrix", action="store_true",
                        help="Also write the normalized matrix and quality flags")
    parser.add_argument("--jobs", "-j", type=_positive_int, default=1,
                        help="Worker threads for per-feature fitting (default: 1)")

    parser.set_defaults(func=run_pipeline)


def _usage_error(message: str) -> int:
    print(f"ERROR: {message}", file=sys.stderr)
    return EXIT_USAGE


def _stage_error(error: Exception) -> int:
    print(f"ERROR: {error}", file=sys.stderr)
    return EXIT_STAGE_FAILED


def _build_lookup(args: argparse.Namespace):
    from arrayde.annotation.probe_mapping import MyGeneInfoLookup, TableLookup

    if args.annotation is not None:
        return TableLookup.from_file(
            args.annotation,
            probe_column=args.probe_column,
            symbol_column=args.symbol_column,
            gene_id_column=args.gene_id_column,
        )
    if args.mygene:
        return MyGeneInfoLookup(cache_dir=args.annotation_cache_dir)
    return None


def run_pipeline(args: argparse.Namespace) -> int:
    """Execute the run command."""
    from arrayde.exceptions import ArrayDEError, PipelineStageError
    from arrayde.io.metadata import DirectorySource, TableMetadataSource
    from arrayde.pipeline import PipelineConfig, StudyPipeline

    # Raw argv (set by main) tells explicit flags apart from defaults
    cli_args = getattr(args, "argv", None)

    if args.config:
        from arrayde.cli.config import load_config, merge_config_with_args, validate_config

        logger.info(f"Loading configuration from: {args.config}")
        try:
            config = load_config(args.config)
            validate_config(config)
            args = merge_config_with_args(config, args, cli_args)
        except (FileNotFoundError, ValueError) as e:
            return _usage_error(f"Config file error: {e}")
    else:
        from arrayde.cli.config import merge_config_with_args

        try:
            args = merge_config_with_args({}, args, cli_args)
        except ValueError as e:
            return _usage_error(str(e))

    for required in ('accession', 'platform', 'raw', 'output'):
        if not getattr(args, required, None):
            return _usage_error(f"--{required} is required (via CLI or config file)")
    if not args.contrasts:
        return _usage_error("at least one --contrast is required (via CLI or config file)")

    try:
        config = PipelineConfig(
            accession=args.accession,
            platform=args.platform,
            contrasts=args.contrasts,
            groups=args.groups,
            background=args.background,
            normalization=args.normalization,
            offset=args.offset,
            filter_low_expression=args.filter_low_expression,
            low_expression_quantile=args.low_expression_quantile,
            p_value=args.p_value,
            lfc=args.lfc,
            fdr_method=args.fdr_method,
            n_jobs=args.jobs,
        )
    except ValueError as e:
        return _usage_error(str(e))

    raw_source = DirectorySource(
        args.raw,
        config.platform,
        pattern=args.pattern,
        flat=args.flat,
        targets=args.targets,
    )
    metadata_source = (
        TableMetadataSource(args.metadata, sample_column=args.sample_column)
        if args.metadata is not None else None
    )

    try:
        lookup = _build_lookup(args)
    except ArrayDEError as e:
        return _stage_error(PipelineStageError('annotation', e, study=config.accession))

    try:
        result = StudyPipeline(config).fetch_and_run(raw_source, metadata_source, lookup)
    except PipelineStageError as e:
        return _stage_error(e)

    try:
        written = result.write(args.output, write_matrix=args.write_matrix)
    except OSError as e:
        return _stage_error(PipelineStageError('output', e, study=config.accession))

    summary = result.differential.summary()
    print(f"\n{config.accession}: {result.matrix.n_features} features × "
          f"{result.matrix.n_samples} samples")
    print(summary.to_string(index=False))
    for name, reason in result.differential.failed.items():
        print(f"  contrast {name!r} not estimable: {reason}")
    for path in written:
        print(f"Wrote {path}")
    return EXIT_OK
