import json
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .db import Database, utc_now
from .errors import ContextTooLarge
from .schemas import ConversationContext, DataSummary, ToolDescriptor, ToolExecution, UserPreferences

logger = logging.getLogger("uvicorn.error")

DEFAULT_MAX_CONTEXT_SIZE = 1024 * 1024
DEFAULT_MAX_HISTORY_ITEMS = 100
MAX_RETAINED_RESULTS = 20
MAX_RESULT_KEYS = 10
SUMMARY_KEYS = ("count", "total", "length", "size", "type")
ITEM_BUCKETS = {"last_24h": timedelta(hours=24), "last_7d": timedelta(days=7), "last_30d": timedelta(days=30)}


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, default=str)


def summarize_result(value: Dict[str, Any]) -> Dict[str, Any]:
    summary = {key: value[key] for key in SUMMARY_KEYS if key in value}
    summary["_summary"] = {
        "original_keys": list(value.keys())[:5],
        "total_keys": len(value),
        "compressed": True,
    }
    return summary


class ContextManager:
    """Working memory of one conversation, kept under a byte budget."""

    def __init__(
        self,
        context: ConversationContext,
        max_context_size: int = DEFAULT_MAX_CONTEXT_SIZE,
        max_history_items: int = DEFAULT_MAX_HISTORY_ITEMS,
    ):
        self.context = context
        self.max_context_size = max_context_size
        self.max_history_items = max_history_items

    @classmethod
    async def build_initial(
        cls,
        tool_catalog: List[ToolDescriptor],
        db: Optional[Database] = None,
        preferences: Optional[UserPreferences] = None,
        max_context_size: int = DEFAULT_MAX_CONTEXT_SIZE,
        max_history_items: int = DEFAULT_MAX_HISTORY_ITEMS,
    ) -> "ContextManager":
        summary = await cls.load_data_summary(db) if db is not None else DataSummary(last_updated=utc_now())
        context = ConversationContext(
            available_tools=list(tool_catalog),
            data_summary=summary,
            user_preferences=preferences or UserPreferences(),
        )
        return cls(context, max_context_size=max_context_size, max_history_items=max_history_items)

    @staticmethod
    async def load_data_summary(db: Database) -> DataSummary:
        entity_rows = await db.fetchall(
            "SELECT entity_type, COUNT(*) AS cnt FROM entities GROUP BY entity_type ORDER BY entity_type"
        )
        relation_rows = await db.fetchall(
            "SELECT relation_type, COUNT(*) AS cnt FROM entity_relations GROUP BY relation_type ORDER BY relation_type"
        )
        total_row = await db.fetchone("SELECT COUNT(*) AS cnt, MAX(created_at) AS latest FROM hn_items")
        total_items = int(total_row["cnt"]) if total_row else 0
        item_counts: Dict[str, int] = {"total": total_items}
        now = datetime.now(timezone.utc)
        for bucket, delta in ITEM_BUCKETS.items():
            row = await db.fetchone("SELECT COUNT(*) AS cnt FROM hn_items WHERE time >= ?", (_iso(now - delta),))
            item_counts[bucket] = int(row["cnt"]) if row else 0
        entity_counts = {row["entity_type"]: int(row["cnt"]) for row in entity_rows}
        return DataSummary(
            total_items=total_items,
            total_entities=sum(entity_counts.values()),
            entity_counts=entity_counts,
            relation_counts={row["relation_type"]: int(row["cnt"]) for row in relation_rows},
            item_counts=item_counts,
            last_updated=(total_row or {}).get("latest") or utc_now(),
        )

    def store_result(self, key: str, value: Any) -> None:
        results = self.context.intermediate_results
        # Re-inserting moves the key to the newest position.
        results.pop(key, None)
        results[key] = value

    def record(self, execution: ToolExecution) -> Optional[str]:
        history = self.context.execution_history
        history.append(execution)
        if len(history) > self.max_history_items:
            del history[: len(history) - self.max_history_items]
        if execution.result is None:
            return None
        key = f"{execution.tool_name}_{len(history)}"
        self.store_result(key, execution.result)
        return key

    def context_size(self) -> int:
        return len(self.context.model_dump_json().encode("utf-8"))

    def compress_if_needed(self) -> bool:
        size = self.context_size()
        if size <= self.max_context_size:
            return False
        logger.warning("Compressing context: %s bytes over budget of %s", size, self.max_context_size)
        keep_history = self.max_history_items // 2
        history = self.context.execution_history
        if len(history) > keep_history:
            self.context.execution_history = history[len(history) - keep_history :]
        results = self.context.intermediate_results
        retained = list(results.items())[-MAX_RETAINED_RESULTS:]
        compressed: Dict[str, Any] = {}
        for key, value in retained:
            if isinstance(value, dict) and len(value) > MAX_RESULT_KEYS:
                value = summarize_result(value)
            compressed[key] = value
        self.context.intermediate_results = compressed
        size = self.context_size()
        if size > self.max_context_size:
            raise ContextTooLarge(size, self.max_context_size)
        return True

    def set_preference(self, key: str, value: Any) -> None:
        prefs = self.context.user_preferences
        if key == "response_format":
            prefs.response_format = str(value)
            return
        if key in ("timeout", "max_steps"):
            try:
                number = int(value)
            except (TypeError, ValueError):
                logger.warning("Ignoring non-integer preference %s=%r", key, value)
                return
            if number < 0:
                logger.warning("Ignoring negative preference %s=%r", key, value)
                return
            if key == "timeout":
                prefs.timeout_seconds = number
            else:
                prefs.max_steps = number
            return
        self.store_result(f"preference_{key}", value)

    def relevant_history(self, tool_name: str, n: int = 5) -> List[ToolExecution]:
        matches = [item for item in reversed(self.context.execution_history) if item.tool_name == tool_name]
        return matches[:n]

    def relevance_score(self, query: str) -> Dict[str, float]:
        words = [word for word in query.lower().split() if word]
        scores: Dict[str, float] = {}
        for index, item in enumerate(self.context.execution_history, start=1):
            name = item.tool_name.lower()
            params = _dumps(item.parameters).lower()
            result = _dumps(item.result).lower() if item.result is not None else ""
            score = 0.0
            for word in words:
                if word in name:
                    score += 1.0
                if word in params:
                    score += 0.5
                if result and word in result:
                    score += 0.3
            scores[f"{item.tool_name}_{index}"] = score
        return scores

    def statistics(self) -> Dict[str, Any]:
        size = self.context_size()
        usage = Counter(item.tool_name for item in self.context.execution_history)
        return {
            "history_size": len(self.context.execution_history),
            "intermediate_results": len(self.context.intermediate_results),
            "available_tools": len(self.context.available_tools),
            "queued_batches": len(self.context.execution_queue),
            "context_size_bytes": size,
            "max_context_size_bytes": self.max_context_size,
            "usage_ratio": size / self.max_context_size if self.max_context_size else 0.0,
            "tool_usage": dict(usage),
        }
