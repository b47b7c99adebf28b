"""
Per-study pipeline: raw intensities -> differential expression table.

Stages run in a fixed order, each consuming only the previous stage's output:

    ingest                  platform check, sample/metadata alignment
    correction              background correction, log2 scale, normalization
    cleaning                missing / duplicate / low-expression rows
    group_assignment        rule table -> label per sample, exclusions
    annotation              probe -> gene lookup (optional)
    design                  group-means design, contrast resolution
    differential_expression fit, moderate, correct, decide

Any failure is re-raised as PipelineStageError naming the stage, with the
original exception chained. Nothing is written to disk by the pipeline
itself; ``StudyResult.write`` is called only after a successful run, so a
failed study never leaves partial output.

Studies are independent: ``run_studies`` executes several on a thread pool
and returns each study's result or error in its own slot.

Examples:
    >>> config = PipelineConfig(
    ...     accession="GSE1234",
    ...     platform="single",
    ...     contrasts=["case-control"],
    ...     groups={"rules": [{"pattern": "patient", "label": "case"}],
    ...             "default": "control"},
    ... )
    >>> result = StudyPipeline(config).run(raw, metadata, lookup)
    >>> result.differential.summary()
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

import pandas as pd

from arrayde.annotation.probe_mapping import ProbeAnnotation, ProbeAnnotator, ProbeGeneLookup
from arrayde.core.expression_matrix import ExpressionMatrix
from arrayde.exceptions import ArrayDEError, PipelineStageError, SchemaMismatchError
from arrayde.io.adapters import Platform, RawIntensities, TwoChannelRaw, check_sample_alignment
from arrayde.io.metadata import MetadataSource, RawIntensitySource
from arrayde.io.phenotype import GroupAssigner
from arrayde.io.writers import write_expression_matrix, write_result_table, write_run_report
from arrayde.quality.filtering import CleaningReport, MatrixCleaner
from arrayde.stats.correction import CorrectionReport, SignalCorrector
from arrayde.stats.design_matrix import Contrast, GroupDesign, build_group_design
from arrayde.stats.differential import DEFAULT_BATCH_SIZE, DifferentialResult, run_differential_expression

logger = logging.getLogger(__name__)

__all__ = ['STAGES', 'PipelineConfig', 'StudyResult', 'StudyPipeline', 'run_studies']

STAGES = (
    'ingest',
    'correction',
    'cleaning',
    'group_assignment',
    'annotation',
    'design',
    'differential_expression',
)


@dataclass
class PipelineConfig:
    """
    Parameters of one study run.

    Attributes:
        accession: Study identifier (used in logs and error context)
        platform: "single", "two-channel" or "bead"
        contrasts: Contrast expressions, e.g. "case-control" or
            "AvsC=(A1+A2)/2-control"
        groups: Group rule section (rules, default, fields, exclude)
        group_order: Design column order (default: first appearance)
        background: Background method (default per platform)
        normalization: Normalization method (default per platform)
        offset: Floor after background correction (default per platform)
        loess_span: Span for two-channel loess normalization
        filter_low_expression: Run the low-expression filter
        low_expression_quantile: Quantile of row means used as the threshold
        p_value: Adjusted p-value threshold for up/down calls
        lfc: Minimum absolute log2 fold change for up/down calls
        fdr_method: Multiple-testing method ("BH", "BY", "bonferroni")
        annotation_set: Platform annotation set passed to the probe lookup
        annotation_retries: Extra lookup attempts after a failure
        n_jobs: Threads for the per-feature fit
        batch_size: Features per fit batch
    """
    accession: str
    platform: str
    contrasts: List[str]
    groups: Dict[str, Any] = field(default_factory=dict)
    group_order: Optional[List[str]] = None
    background: Optional[str] = None
    normalization: Optional[str] = None
    offset: Optional[float] = None
    loess_span: float = 0.3
    filter_low_expression: bool = True
    low_expression_quantile: float = 0.25
    p_value: float = 0.05
    lfc: float = 0.0
    fdr_method: str = "BH"
    annotation_set: Optional[str] = None
    annotation_retries: int = 2
    n_jobs: int = 1
    batch_size: int = DEFAULT_BATCH_SIZE

    def __post_init__(self):
        self.platform = Platform.parse(self.platform).value
        if isinstance(self.contrasts, str):
            self.contrasts = [self.contrasts]
        self.contrasts = list(self.contrasts)

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> PipelineConfig:
        """
        Build from a flat or sectioned config mapping.

        Sections ``correction``, ``cleaning`` and ``decision`` are flattened;
        ``contrasts`` may be a list of expressions or a ``name: expression``
        mapping.
        """
        flat: Dict[str, Any] = {}
        for key, value in config.items():
            if key in ('correction', 'cleaning', 'decision') and isinstance(value, Mapping):
                flat.update(value)
            else:
                flat[key] = value

        contrasts = flat.get('contrasts', [])
        if isinstance(contrasts, Mapping):
            flat['contrasts'] = [f"{name}={expr}" for name, expr in contrasts.items()]
        if 'quantile' in flat:
            flat['low_expression_quantile'] = flat.pop('quantile')

        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in flat.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StudyResult:
    """Everything one successful study run produced."""
    accession: str
    matrix: ExpressionMatrix
    correction: CorrectionReport
    cleaning: CleaningReport
    groups: pd.DataFrame
    design: GroupDesign
    contrasts: List[Contrast]
    differential: DifferentialResult
    annotation: Optional[ProbeAnnotation] = None

    def report(self) -> Dict[str, Any]:
        """JSON-friendly run record."""
        return {
            'accession': self.accession,
            'correction': self.correction.to_dict(),
            'cleaning': self.cleaning.to_dict(),
            'groups': self.groups['group'].value_counts().to_dict(),
            'design': {
                'groups': self.design.groups,
                'rank': self.design.rank,
                'df_residual': self.design.df_residual,
            },
            'contrasts': {c.name: dict(c.coefficients) for c in self.contrasts},
            'prior_df': self.differential.prior_df,
            'prior_var': self.differential.prior_var,
            'failed_contrasts': self.differential.failed,
            'summary': self.differential.summary().to_dict(orient='records'),
        }

    def write(self, output: Path, write_matrix: bool = False) -> List[Path]:
        """
        Write the result table at ``output`` plus a ``.report.json`` beside it
        (and the normalized matrix when requested).
        """
        output = Path(output)
        written = [write_result_table(self.differential, output)]
        written.append(write_run_report(self.report(), output.with_suffix('.report.json')))
        if write_matrix:
            written.extend(write_expression_matrix(self.matrix, output.with_suffix('')))
        return written


class StudyPipeline:
    """
    Runs the stages for one study.

    Args:
        config: Run parameters

    Raises (from run):
        PipelineStageError: A stage failed; ``.stage`` names it and the
            original exception is ``__cause__``
    """

    def __init__(self, config: PipelineConfig):
        self.config = config
        self.platform = Platform.parse(config.platform)

    @contextmanager
    def _stage(self, name: str) -> Iterator[None]:
        logger.debug(f"{self.config.accession}: stage '{name}' started")
        try:
            yield
        except PipelineStageError:
            raise
        except Exception as e:
            if isinstance(e, ArrayDEError):
                e.with_context(study=self.config.accession)
            logger.error(f"{self.config.accession}: stage '{name}' failed: {e}")
            raise PipelineStageError(name, e, study=self.config.accession) from e

    def _check_ingest(self, raw: RawIntensities | TwoChannelRaw,
                      metadata: Optional[pd.DataFrame]) -> pd.DataFrame:
        is_two_channel = isinstance(raw, TwoChannelRaw)
        if is_two_channel != (self.platform is Platform.TWO_CHANNEL):
            raise SchemaMismatchError(
                f"Raw data type {type(raw).__name__} does not match platform {self.platform.value!r}",
                stage='ingest',
            )
        sample_ids = raw.array_ids if is_two_channel else raw.sample_ids
        if metadata is None:
            if not is_two_channel:
                raise SchemaMismatchError("Sample metadata is required", stage='ingest')
            metadata = raw.targets
        metadata = metadata.copy()
        metadata.index = metadata.index.astype(str)
        check_sample_alignment(pd.Index(sample_ids).astype(str), metadata, study=self.config.accession)
        return metadata

    @staticmethod
    def _sample_table(matrix: ExpressionMatrix, metadata: pd.DataFrame) -> pd.DataFrame:
        """Metadata in matrix column order, plus columns the correction added."""
        table = metadata.reindex(matrix.sample_ids.astype(str))
        extra = [c for c in matrix.sample_metadata.columns if c not in table.columns]
        if extra:
            added = matrix.sample_metadata[extra].copy()
            added.index = table.index
            table = pd.concat([table, added], axis=1)
        return table

    def run(
        self,
        raw: RawIntensities | TwoChannelRaw,
        metadata: Optional[pd.DataFrame],
        lookup: Optional[ProbeGeneLookup] = None,
    ) -> StudyResult:
        """
        Execute every stage for one study.

        Args:
            raw: Platform raw container
            metadata: Sample metadata indexed by sample id (two-channel runs
                may pass None to use the targets table)
            lookup: Probe -> gene service; None leaves every probe unmapped
        """
        cfg = self.config
        logger.info(f"{cfg.accession}: starting {self.platform.value} pipeline "
                    f"({len(cfg.contrasts)} contrasts)")

        with self._stage('ingest'):
            metadata = self._check_ingest(raw, metadata)

        with self._stage('correction'):
            corrector = SignalCorrector(
                self.platform,
                background=cfg.background,
                normalization=cfg.normalization,
                offset=cfg.offset,
                loess_span=cfg.loess_span,
            )
            matrix, correction = corrector.correct(raw)

        with self._stage('cleaning'):
            cleaner = MatrixCleaner(
                filter_low_expression=cfg.filter_low_expression,
                quantile=cfg.low_expression_quantile,
            )
            matrix, cleaning = cleaner.clean(matrix)

        with self._stage('group_assignment'):
            assigner = GroupAssigner.from_config(cfg.groups)
            table = self._sample_table(matrix, metadata)
            groups = assigner.provenance(table)
            keep = assigner.included(groups['group'])
            if not keep.all():
                logger.info(f"{cfg.accession}: excluding {int((~keep).sum())} samples "
                            f"labelled {sorted(assigner.exclude_labels)}")
                matrix = matrix.select_samples(keep.to_numpy())
                groups = groups[keep]
            matrix = matrix.with_metadata(
                matrix.sample_metadata.assign(group=groups['group'].to_numpy())
            )

        annotation = None
        if lookup is not None:
            with self._stage('annotation'):
                annotator = ProbeAnnotator(lookup, cfg.annotation_set, retries=cfg.annotation_retries)
                annotation = annotator.annotate(matrix.feature_ids)

        with self._stage('design'):
            labels = groups['group'].copy()
            labels.index = matrix.sample_ids
            design = build_group_design(labels, cfg.group_order)
            contrasts = design.resolve(cfg.contrasts)

        with self._stage('differential_expression'):
            differential = run_differential_expression(
                matrix,
                design,
                contrasts,
                annotation=annotation,
                p_value=cfg.p_value,
                lfc=cfg.lfc,
                fdr_method=cfg.fdr_method,
                n_jobs=cfg.n_jobs,
                batch_size=cfg.batch_size,
            )

        logger.info(
            f"{cfg.accession}: done; {len(differential.tables)} contrasts tested"
            + (f", {len(differential.failed)} failed" if differential.failed else "")
        )
        return StudyResult(
            accession=cfg.accession,
            matrix=matrix,
            correction=correction,
            cleaning=cleaning,
            groups=groups,
            design=design,
            contrasts=contrasts,
            differential=differential,
            annotation=annotation,
        )

    def fetch_and_run(
        self,
        raw_source: RawIntensitySource,
        metadata_source: Optional[MetadataSource],
        lookup: Optional[ProbeGeneLookup] = None,
    ) -> StudyResult:
        """Fetch the study's inputs from sources, then run."""
        with self._stage('ingest'):
            raw = raw_source.fetch(self.config.accession)
            metadata = metadata_source.fetch(self.config.accession) if metadata_source is not None else None
        return self.run(raw, metadata, lookup)


def run_studies(
    configs: Sequence[PipelineConfig],
    raw_source: RawIntensitySource,
    metadata_source: Optional[MetadataSource],
    lookup: Optional[ProbeGeneLookup] = None,
    max_workers: int = 4,
) -> Dict[str, StudyResult | PipelineStageError]:
    """
    Run several studies concurrently.

    Each study owns its matrices and design; a failure is returned in that
    study's slot and does not affect the others.

    Returns:
        accession -> StudyResult or PipelineStageError, in ``configs`` order
    """
    accessions = [c.accession for c in configs]
    if len(set(accessions)) != len(accessions):
        raise ValueError("Study accessions must be unique")

    outcomes: Dict[str, StudyResult | PipelineStageError] = {}
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {
            executor.submit(StudyPipeline(cfg).fetch_and_run, raw_source, metadata_source, lookup): cfg.accession
            for cfg in configs
        }
        for future in as_completed(futures):
            accession = futures[future]
            try:
                outcomes[accession] = future.result()
            except PipelineStageError as e:
                outcomes[accession] = e

    n_failed = sum(isinstance(v, PipelineStageError) for v in outcomes.values())
    logger.info(f"Ran {len(configs)} studies: {len(configs) - n_failed} succeeded, {n_failed} failed")
    return {a: outcomes[a] for a in accessions}
