"""
Three-layer child memory.

- ephemeral: short-lived observations, expire after a TTL
- hypothesis: suspected patterns that can be validated or rejected
- stable: confirmed long-term patterns, written by the system only
"""
import uuid
from datetime import datetime, timedelta
from typing import Any

from studyquest.core.errors import InvalidLayerError
from studyquest.core.logging import DOMAIN_MEMORY, get_domain_logger
from studyquest.core.settings import settings
from studyquest.memory.repository import LIVE_STATUSES, LearnerRepository, utcnow
from studyquest.schemas.context import (
    CONFIDENCE_ORDER,
    ConfidenceLevel,
    MemoryEntry,
    MemoryLayer,
    MemoryStatus,
)
from studyquest.schemas.intent import IntentType, TeachingIntent

logger = get_domain_logger(__name__, DOMAIN_MEMORY)

LAST_INTRODUCE_KEY = "last_introduce"
AGENT_WRITABLE_LAYERS = (MemoryLayer.EPHEMERAL, MemoryLayer.HYPOTHESIS)
_DECAY_STEP = {ConfidenceLevel.HIGH: ConfidenceLevel.MEDIUM, ConfidenceLevel.MEDIUM: ConfidenceLevel.LOW}


class ChildMemoryService:
    def __init__(self, repository: LearnerRepository):
        self.repository = repository

    async def write_memory(
        self,
        child_id: str,
        layer: MemoryLayer | str,
        key: str,
        content: dict[str, Any],
        confidence: ConfidenceLevel | str = ConfidenceLevel.LOW,
        *,
        ttl_days: int | None = None,
        now: datetime | None = None,
    ) -> MemoryEntry:
        """Upsert one memory by (child, layer, key); a repeat write bumps the evidence count."""
        layer = MemoryLayer(layer)
        now = now or utcnow()
        ttl = settings.ephemeral_ttl_days if ttl_days is None else ttl_days
        existing = await self.repository.find_memory(child_id, layer, key)
        expires_at = now + timedelta(days=ttl) if layer == MemoryLayer.EPHEMERAL else None
        if existing is not None:
            entry = existing.model_copy(
                update={
                    "content": dict(content),
                    "confidence": ConfidenceLevel(confidence),
                    "evidence_count": existing.evidence_count + 1,
                    "last_updated": now,
                    "expires_at": expires_at,
                    "status": existing.status if existing.status in LIVE_STATUSES else _initial_status(layer),
                }
            )
        else:
            entry = MemoryEntry(
                id=str(uuid.uuid4()),
                child_id=child_id,
                layer=layer,
                key=key,
                content=dict(content),
                status=_initial_status(layer),
                confidence=ConfidenceLevel(confidence),
                evidence_count=1,
                first_observed=now,
                last_updated=now,
                expires_at=expires_at,
            )
        logger.info("Writing %s memory child=%s key=%s evidence=%s", layer.value, child_id, key, entry.evidence_count)
        return await self.repository.upsert_memory(entry)

    async def write_observation(
        self,
        child_id: str,
        layer: MemoryLayer | str,
        key: str,
        content: dict[str, Any],
        confidence: ConfidenceLevel | str = ConfidenceLevel.LOW,
        now: datetime | None = None,
    ) -> MemoryEntry:
        """Agent-facing write; the stable layer is reserved for the system."""
        try:
            layer = MemoryLayer(layer)
        except ValueError as exc:
            raise InvalidLayerError(f"unknown memory layer: {layer}") from exc
        if layer not in AGENT_WRITABLE_LAYERS:
            raise InvalidLayerError("agents may only write ephemeral or hypothesis memories")
        return await self.write_memory(child_id, layer, key, content, confidence, now=now)

    async def read_memory(
        self,
        child_id: str,
        *,
        layer: MemoryLayer | str | None = None,
        status: MemoryStatus | str | None = None,
        key_pattern: str | None = None,
        min_confidence: ConfidenceLevel | str | None = None,
    ) -> list[MemoryEntry]:
        """Live memories, newest first, filtered by layer, exact status, key substring and confidence floor."""
        entries = await self.repository.list_memory(child_id)
        if status is not None:
            entries = [e for e in entries if e.status == MemoryStatus(status)]
        else:
            entries = [e for e in entries if e.status in LIVE_STATUSES]
        if layer is not None:
            entries = [e for e in entries if e.layer == MemoryLayer(layer)]
        if key_pattern:
            needle = key_pattern.lower()
            entries = [e for e in entries if needle in e.key.lower()]
        if min_confidence is not None:
            floor = CONFIDENCE_ORDER[ConfidenceLevel(min_confidence)]
            entries = [e for e in entries if CONFIDENCE_ORDER[e.confidence] >= floor]
        return sorted(entries, key=lambda e: e.last_updated, reverse=True)

    async def get_memory_summary(self, child_id: str) -> dict[str, Any]:
        entries = await self.read_memory(child_id)
        stable = [e for e in entries if e.layer == MemoryLayer.STABLE]
        hypotheses = [e for e in entries if e.layer == MemoryLayer.HYPOTHESIS]
        ephemeral = [e for e in entries if e.layer == MemoryLayer.EPHEMERAL]
        return {
            "stable_patterns": stable,
            "active_hypotheses": hypotheses,
            "recent_observations": ephemeral[:5],
            "stats": {
                "total_memories": len(entries),
                "stable_count": len(stable),
                "hypothesis_count": len(hypotheses),
                "ephemeral_count": len(ephemeral),
            },
        }

    async def promote_memory(self, memory_id: str, now: datetime | None = None) -> MemoryEntry | None:
        current = await self.repository.get_memory(memory_id)
        if current is None:
            logger.warning("Promote skipped, memory not found: %s", memory_id)
            return None
        if current.layer == MemoryLayer.STABLE:
            return current
        now = now or utcnow()
        if current.layer == MemoryLayer.EPHEMERAL:
            new_layer, new_status = MemoryLayer.HYPOTHESIS, MemoryStatus.SUSPECTED
        else:
            new_layer, new_status = MemoryLayer.STABLE, MemoryStatus.ACTIVE
        logger.info("Promoting memory %s: %s -> %s", memory_id, current.layer.value, new_layer.value)
        promoted = current.model_copy(
            update={
                "layer": new_layer,
                "status": new_status,
                "last_confirmed": now,
                "last_updated": now,
                "expires_at": None,
            }
        )
        return await self.repository.upsert_memory(promoted)

    async def validate_hypothesis(self, memory_id: str, validated: bool, now: datetime | None = None) -> MemoryEntry | None:
        if validated:
            return await self.promote_memory(memory_id, now=now)
        current = await self.repository.get_memory(memory_id)
        if current is None:
            return None
        resolved = current.model_copy(update={"status": MemoryStatus.RESOLVED, "last_updated": now or utcnow()})
        return await self.repository.upsert_memory(resolved)

    async def decay_memory(self, child_id: str, now: datetime | None = None) -> int:
        """Step down idle suspected hypotheses one confidence level; already-low ones resolve."""
        now = now or utcnow()
        cutoff = now - timedelta(days=settings.hypothesis_decay_days)
        decayed = 0
        for entry in await self.repository.list_memory(child_id):
            if entry.layer != MemoryLayer.HYPOTHESIS or entry.status != MemoryStatus.SUSPECTED:
                continue
            if entry.last_updated >= cutoff:
                continue
            lowered = _DECAY_STEP.get(entry.confidence)
            update: dict[str, Any] = {"last_updated": now}
            if lowered is None:
                update["status"] = MemoryStatus.RESOLVED
            else:
                update["confidence"] = lowered
            await self.repository.upsert_memory(entry.model_copy(update=update))
            decayed += 1
        logger.info("Decayed %s memories for child %s", decayed, child_id)
        return decayed

    async def cleanup_expired(self, child_id: str, now: datetime | None = None) -> int:
        now = now or utcnow()
        expired = 0
        for entry in await self.repository.list_memory(child_id):
            if entry.layer == MemoryLayer.EPHEMERAL and entry.status == MemoryStatus.ACTIVE and entry.expires_at and entry.expires_at < now:
                await self.repository.upsert_memory(entry.model_copy(update={"status": MemoryStatus.EXPIRED}))
                expired += 1
        return expired

    async def record_introduce(self, child_id: str, topic: str | None = None, now: datetime | None = None) -> MemoryEntry:
        """Stamp the stable ``last_introduce`` pattern read by the introduce gate."""
        now = now or utcnow()
        return await self.write_memory(
            child_id,
            MemoryLayer.STABLE,
            LAST_INTRODUCE_KEY,
            {"introduced_at": now.isoformat(), "topic": topic},
            ConfidenceLevel.HIGH,
            now=now,
        )

    async def note_intent(self, child_id: str, intent: TeachingIntent, now: datetime | None = None) -> None:
        """Start the introduce cooldown when ``intent`` introduces new material.

        The intent is already decided, so a storage failure is logged rather than raised.
        """
        if intent.type != IntentType.INTRODUCE:
            return
        topic = intent.focus_knowledge_points[0] if intent.focus_knowledge_points else None
        try:
            await self.record_introduce(child_id, topic, now)
        except Exception as exc:
            logger.warning("Could not record introduce for child %s: %s", child_id, exc)


def _initial_status(layer: MemoryLayer) -> MemoryStatus:
    return MemoryStatus.SUSPECTED if layer == MemoryLayer.HYPOTHESIS else MemoryStatus.ACTIVE
