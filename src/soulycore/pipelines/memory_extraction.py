"""Memory extraction: the write path that learns from new turns.

The raw text is archived to the document tier first. One structured
generation then yields entities and knowledge snippets. Entities go to the
structured tier, each noted as mentioned by the message, and snippets go
to the semantic tier. Each logical step is recorded in the pipeline audit
trail. The pipeline runs detached from the reply and never raises: failures
end up in the audit record and the log.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field

from ..interfaces import HistoryMessage, IGenerativeService
from ..services.audit import PipelineAuditStore
from ..services.tiers import TierRegistry

logger = logging.getLogger(__name__)

PIPELINE_TYPE = "MemoryExtraction"

EXTRACTION_INSTRUCTION = """You extract durable memory from conversation text.

Return a JSON object with:
- "entities": list of {"name", "type", "details"} for people, projects,
  organisations, places and concepts that are worth remembering.
- "knowledge": list of short, self-contained factual statements.
- "relationships": list of {"source", "predicate", "target"} between entities.

Only include information stated in the text. Use empty lists when nothing
qualifies. Respond with JSON only."""


class ExtractedEntity(BaseModel):
    name: str
    type: str = "concept"
    details: str = Field(default="", validation_alias=AliasChoices("details", "description"))


class ExtractedRelationship(BaseModel):
    source: str
    predicate: str
    target: str


class ExtractionPayload(BaseModel):
    entities: list[ExtractedEntity] = Field(default_factory=list)
    knowledge: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("knowledge", "facts")
    )
    relationships: list[ExtractedRelationship] = Field(default_factory=list)


@dataclass
class ExtractionResult:
    pipeline_run_id: str
    entity_ids: list[str] = field(default_factory=list)
    knowledge_ids: list[str] = field(default_factory=list)
    relationship_ids: list[str] = field(default_factory=list)


class MemoryExtractionPipeline:
    """Derives structured and semantic records from new content."""

    def __init__(
        self,
        generative: IGenerativeService,
        tiers: TierRegistry,
        audit: PipelineAuditStore,
        extract_relationships: bool = False,
    ):
        self.generative = generative
        self.tiers = tiers
        self.audit = audit
        self.extract_relationships = extract_relationships

    async def run(
        self,
        text: str,
        message_id: str,
        conversation_id: str,
        extract_entities: bool = True,
        extract_knowledge: bool = True,
    ) -> Optional[ExtractionResult]:
        """Extract and persist memory from ``text``.

        Returns:
            The stored record ids, or None when the pipeline failed.
        """
        recorder = self.audit.start(PIPELINE_TYPE)
        result = ExtractionResult(pipeline_run_id=recorder.run_id)

        try:
            await self._archive(recorder, text, message_id, conversation_id)

            with recorder.step("generate_extraction", input_summary=text) as step:
                payload = await self.generative.generate_structured(
                    [HistoryMessage(role="user", content=text)],
                    EXTRACTION_INSTRUCTION,
                    ExtractionPayload,
                )
                step.output_summary = (
                    f"{len(payload.entities)} entities, {len(payload.knowledge)} knowledge snippets"
                )

            if extract_entities and payload.entities:
                structured = self.tiers.require("structured")
                with recorder.step(
                    "store_entities", input_summary=f"{len(payload.entities)} entities"
                ) as step:
                    for entity in payload.entities:
                        record = await structured.store(
                            type="entity",
                            data={"name": entity.name, "type": entity.type, "description": entity.details},
                        )
                        result.entity_ids.append(record.id)
                        await structured.store(
                            type="mention",
                            data={
                                "message_id": message_id,
                                "entity_id": record.id,
                                "conversation_id": conversation_id,
                            },
                        )
                    step.output_summary = f"stored {len(result.entity_ids)} entities"
            else:
                recorder.skip("store_entities", "disabled" if not extract_entities else "nothing extracted")

            if extract_knowledge and payload.knowledge:
                semantic = self.tiers.require("semantic")
                with recorder.step(
                    "store_knowledge", input_summary=f"{len(payload.knowledge)} snippets"
                ) as step:
                    for snippet in payload.knowledge:
                        record = await semantic.store(
                            text=snippet,
                            metadata={
                                "conversation_id": conversation_id,
                                "message_id": message_id,
                                "type": "fact",
                            },
                        )
                        result.knowledge_ids.append(record.id)
                    step.output_summary = f"stored {len(result.knowledge_ids)} snippets"
            else:
                recorder.skip("store_knowledge", "disabled" if not extract_knowledge else "nothing extracted")

            if self.extract_relationships:
                await self._store_relationships(recorder, payload, result)

        except Exception as e:
            logger.exception("Memory extraction failed for message %s", message_id)
            recorder.finish(error=str(e))
            return None

        recorder.finish()
        logger.info(
            "Extracted %d entities and %d snippets from message %s",
            len(result.entity_ids), len(result.knowledge_ids), message_id,
        )
        return result

    async def _archive(self, recorder, text: str, message_id: str, conversation_id: str) -> None:
        """Keep the raw text in the document tier; a failure here is logged, not fatal."""
        document = self.tiers.get("document")
        if document is None:
            recorder.skip("archive_text", "no document tier")
            return
        try:
            with recorder.step("archive_text", input_summary=text) as step:
                record = await document.store(
                    data={"text": text, "message_id": message_id, "conversation_id": conversation_id},
                    type="extraction_log",
                )
                step.output_summary = f"archived as {record.id}"
        except Exception as e:
            logger.warning("Archiving message %s failed, continuing: %s", message_id, e)

    async def _store_relationships(self, recorder, payload: ExtractionPayload, result: ExtractionResult) -> None:
        graph = self.tiers.get("graph")
        if graph is None or not payload.relationships:
            recorder.skip("store_relationships", "no graph tier" if graph is None else "nothing extracted")
            return
        with recorder.step(
            "store_relationships", input_summary=f"{len(payload.relationships)} relationships"
        ) as step:
            for rel in payload.relationships:
                edge = await graph.store(subject=rel.source, predicate=rel.predicate, object=rel.target)
                result.relationship_ids.append(edge.id)
            step.output_summary = f"stored {len(result.relationship_ids)} relationships"
