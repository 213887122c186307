"""End-to-end integration: align, select, fit, cross-validate, export."""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from multiomics_ml.core.config import PipelineConfig
from multiomics_ml.core.errors import Diagnostics
from multiomics_ml.train.cv import CrossValidator
from multiomics_ml.train.model import BlockPLSDA, FittedModel
from multiomics_ml.train.results import PerformanceReport
from multiomics_ml.wrangle.alignment import AlignedDataset, SampleAligner
from multiomics_ml.wrangle.blocks import Block
from multiomics_ml.wrangle.labels import LabelVector
from multiomics_ml.wrangle.selection import FeatureSelector

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Everything produced by one `IntegrationPipeline.run`.

    `diagnostics` gathers the reported conditions of every step in order
    (alignment, selection, model fit, cross-validation).
    """

    dataset: AlignedDataset
    model: FittedModel
    report: Optional[PerformanceReport] = None
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    output_dir: Optional[Path] = None


class IntegrationPipeline:
    """Chain the processing steps with one explicit `PipelineConfig`.

    The pipeline holds no state between runs beyond its configuration;
    every step can also be called on its own.
    """

    def __init__(self, config: Optional[PipelineConfig] = None) -> None:
        self.config = config or PipelineConfig()

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "IntegrationPipeline":
        return cls(PipelineConfig.from_yaml(path))

    def align(
        self,
        blocks: Union[Sequence[Block], Mapping[str, Block]],
        labels: LabelVector,
    ) -> AlignedDataset:
        return SampleAligner(self.config.alignment).align(blocks, labels)

    def select(self, dataset: AlignedDataset) -> AlignedDataset:
        return FeatureSelector(self.config.selection).select_dataset(dataset)

    def fit(self, dataset: AlignedDataset) -> FittedModel:
        return BlockPLSDA(self.config.model).fit(dataset)

    def cross_validate(self, dataset: AlignedDataset) -> PerformanceReport:
        return CrossValidator(
            dataset, self.config.model, self.config.cross_validation
        ).run()

    def run(
        self,
        blocks: Union[Sequence[Block], Mapping[str, Block]],
        labels: LabelVector,
        cross_validate: bool = True,
        output_dir: Optional[Union[str, Path]] = None,
    ) -> PipelineResult:
        """Run every step and optionally write the results to `output_dir`.

        Args:
            blocks: Two or more raw Blocks
            labels: Class labels (missing entries are discarded)
            cross_validate: Also estimate the out-of-sample error
            output_dir: Directory for scores, loadings, CV tables and the
                pickled model

        Returns:
            PipelineResult with the selected dataset, fitted model and report
        """
        dataset = self.select(self.align(blocks, labels))
        logger.info(
            "Selected features: %s",
            ", ".join(
                f"{name}={block.n_features}"
                for name, block in dataset.blocks.items()
            ),
        )
        model = self.fit(dataset)

        diagnostics = Diagnostics(dataset.diagnostics)
        diagnostics.extend(model.diagnostics)

        report = None
        if cross_validate:
            report = self.cross_validate(dataset)
            diagnostics.extend(report.diagnostics)

        result = PipelineResult(
            dataset=dataset,
            model=model,
            report=report,
            diagnostics=diagnostics,
        )
        if output_dir is not None:
            result.output_dir = self.export(result, output_dir)
        return result

    def export(
        self, result: PipelineResult, output_dir: Union[str, Path]
    ) -> Path:
        """Write model tables, CV tables, the model pickle and diagnostics."""
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        result.model.export_scores(out / "scores")
        result.model.save(out / "model.pkl")
        if result.report is not None:
            result.report.export(out / "cv")

        payload: Dict[str, Any] = {
            "samples": len(result.dataset.samples),
            "classes": result.dataset.labels.class_counts(),
            "blocks": {
                name: block.n_features
                for name, block in result.dataset.blocks.items()
            },
            "converged": result.model.converged,
            "diagnostics": result.diagnostics.to_list(),
        }
        (out / "run.json").write_text(json.dumps(payload, indent=2))
        logger.info("Wrote pipeline outputs to %s", out)
        return out
