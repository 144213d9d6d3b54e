"""Read, write, link prediction and consolidation pipelines."""

from .consolidation import ExperienceConsolidationPipeline
from .context_assembly import AssemblyResult, ContextAssemblyPipeline
from .link_prediction import LinkPredictionPipeline, LinkProposal
from .memory_extraction import ExtractionResult, MemoryExtractionPipeline

__all__ = [
    "AssemblyResult",
    "ContextAssemblyPipeline",
    "ExperienceConsolidationPipeline",
    "ExtractionResult",
    "LinkPredictionPipeline",
    "LinkProposal",
    "MemoryExtractionPipeline",
]
