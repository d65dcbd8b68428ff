"""End-to-end pipeline: source tree -> descriptors -> cases -> collection."""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

from api_test_synth.config import SynthConfig
from api_test_synth.errors import DiscoveryError, SynthError
from api_test_synth.generator.collection import CollectionDocument, CollectionEmitter
from api_test_synth.generator.testcase import TestCaseSpec, TestCaseSynthesizer
from api_test_synth.generator.validator import validate_collection
from api_test_synth.parser.base import EndpointDescriptor, SourceTree
from api_test_synth.parser.builder import EndpointModelBuilder
from api_test_synth.parser.detect import detect_adapter, get_adapter
from api_test_synth.parser.schema import SchemaExtractor

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    adapter: str
    descriptors: list[EndpointDescriptor]
    cases: list[TestCaseSpec] = field(default_factory=list)
    document: CollectionDocument | None = None
    issues: list[SynthError] = field(default_factory=list)

    @property
    def discovery_errors(self) -> list[DiscoveryError]:
        return [i for i in self.issues if isinstance(i, DiscoveryError)]


class Pipeline:
    """Runs every stage over one source tree.

    Recorded issues accumulate on ``self.issues`` so callers can still report
    them when a fatal error aborts the run.
    """

    def __init__(self, config: SynthConfig | None = None):
        self.config = config or SynthConfig()
        self.issues: list[SynthError] = []

    def describe(self, source: Path, adapter_name: str = "auto",
                 cancel: threading.Event | None = None) -> PipelineResult:
        """Discovery, schema extraction and model building only."""
        self.issues = []
        tree = SourceTree(source)
        if adapter_name == "auto":
            adapter_name = detect_adapter(source)
            logger.info("detected %s sources in %s", adapter_name, source)
        adapter = get_adapter(adapter_name)

        discovery = adapter.discover(tree, cancel)
        self.issues.extend(discovery.issues)
        logger.info("discovered %d endpoints (%d unresolved)", len(discovery.endpoints), len(discovery.issues))

        extractor = SchemaExtractor(adapter, adapter.collect_types(tree), self.config.max_recursion_depth)
        references = sorted({
            ref
            for e in discovery.endpoints
            for ref in (e.request_schema_ref, e.response_schema_ref)
            if ref
        })
        field_sets = {ref: extractor.resolve(ref) for ref in references}
        self.issues.extend(extractor.warnings)

        descriptors = EndpointModelBuilder().build(discovery.endpoints, field_sets, adapter.collect_auth(tree))
        logger.info("built %d endpoint descriptors", len(descriptors))
        return PipelineResult(adapter=adapter_name, descriptors=descriptors, issues=self.issues)

    def run(self, source: Path, adapter_name: str = "auto",
            cancel: threading.Event | None = None) -> PipelineResult:
        """Full pipeline; the result carries the collection document."""
        result = self.describe(source, adapter_name, cancel)

        synthesizer = TestCaseSynthesizer(self.config, result.descriptors)
        cases = []
        for descriptor in result.descriptors:
            cases.extend(synthesizer.synthesize(descriptor))
        cases.extend(synthesizer.synthesize_chains(result.descriptors))
        cases.extend(synthesizer.synthesize_cleanup(result.descriptors))
        self.issues.extend(synthesizer.issues)
        logger.info("synthesized %d test cases", len(cases))

        document = CollectionEmitter(self.config).emit(result.descriptors, cases)
        errors = validate_collection(document.to_postman())
        if errors:
            details = "\n  ".join(f"{k}: {v}" for k, v in sorted(errors.items()))
            raise SynthError(f"generated collection failed structural validation:\n  {details}")

        result.cases = cases
        result.document = document
        return result
