from typing import Any, Dict, List, Tuple

from .db import Database
from .schemas import ToolConstraints, ToolDescriptor, ToolExample
from .tool_registry import ToolHandler, ToolRegistry

ITEM_TYPES = ["story", "comment", "job", "poll"]
DEFAULT_LIMIT = 100
TEXT_PREVIEW_CHARS = 500

_TIME_RANGE_SCHEMA = {
    "type": "object",
    "properties": {
        "start": {"type": "string", "format": "date-time"},
        "end": {"type": "string", "format": "date-time"},
    },
}
_INT_RANGE_SCHEMA = {
    "type": "object",
    "properties": {
        "min": {"type": "integer", "minimum": 0},
        "max": {"type": "integer", "minimum": 0},
    },
}
_LIMIT_SCHEMA = {"type": "integer", "minimum": 1, "maximum": 1000, "default": DEFAULT_LIMIT}

_ITEM_COLUMNS = "id, item_type, by, time, title, url, score, text, descendants"


def _item_row(row: Dict[str, Any]) -> Dict[str, Any]:
    text = row.get("text")
    if text and len(text) > TEXT_PREVIEW_CHARS:
        text = text[:TEXT_PREVIEW_CHARS] + "..."
    return {
        "id": row.get("id"),
        "item_type": row.get("item_type"),
        "author": row.get("by"),
        "time": row.get("time"),
        "title": row.get("title"),
        "url": row.get("url"),
        "score": row.get("score"),
        "text": text,
        "comment_count": row.get("descendants"),
    }


def _apply_time_range(clauses: List[str], params: List[Any], time_range: Any) -> None:
    if not isinstance(time_range, dict):
        return
    if time_range.get("start"):
        clauses.append("time >= ?")
        params.append(time_range["start"])
    if time_range.get("end"):
        clauses.append("time <= ?")
        params.append(time_range["end"])


def _apply_int_range(clauses: List[str], params: List[Any], column: str, value: Any) -> None:
    if not isinstance(value, dict):
        return
    if value.get("min") is not None:
        clauses.append(f"{column} >= ?")
        params.append(int(value["min"]))
    if value.get("max") is not None:
        clauses.append(f"{column} <= ?")
        params.append(int(value["max"]))


def _where(clauses: List[str]) -> str:
    return (" WHERE " + " AND ".join(clauses)) if clauses else ""


class SearchItemsTool(ToolHandler):
    def __init__(self, db: Database):
        self.db = db

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name="search_items",
            description="Full-text search over Hacker News stories and comments with optional author, type, score and time filters",
            category="DataQuery",
            parameters_schema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "minLength": 1, "maxLength": 1000},
                    "author": {"type": "string", "minLength": 1},
                    "item_type": {"type": "string", "enum": ITEM_TYPES},
                    "min_score": {"type": "integer", "minimum": 0, "maximum": 10000},
                    "time_range": _TIME_RANGE_SCHEMA,
                    "limit": _LIMIT_SCHEMA,
                },
                "required": ["query"],
            },
            examples=[
                ToolExample(
                    description="Search for stories about Rust",
                    parameters={"query": "rust", "item_type": "story", "limit": 10},
                    expected_result="Up to 10 stories mentioning rust",
                )
            ],
            constraints=ToolConstraints(max_execution_time_ms=5000, max_result_size=1000, rate_limit_per_minute=60),
            tags=["search", "items", "text"],
        )

    async def execute(self, parameters: Dict[str, Any]) -> Any:
        query = str(parameters["query"])
        pattern = f"%{query}%"
        clauses = ["deleted = 0", "(title LIKE ? OR text LIKE ?)"]
        params: List[Any] = [pattern, pattern]
        if parameters.get("author"):
            clauses.append("by = ?")
            params.append(parameters["author"])
        if parameters.get("item_type"):
            clauses.append("item_type = ?")
            params.append(parameters["item_type"])
        if parameters.get("min_score") is not None:
            clauses.append("score >= ?")
            params.append(int(parameters["min_score"]))
        _apply_time_range(clauses, params, parameters.get("time_range"))
        limit = int(parameters.get("limit") or DEFAULT_LIMIT)
        where = _where(clauses)
        count_row = await self.db.fetchone(f"SELECT COUNT(*) AS cnt FROM hn_items{where}", tuple(params))
        rows = await self.db.fetchall(
            f"SELECT {_ITEM_COLUMNS} FROM hn_items{where} ORDER BY score DESC, time DESC LIMIT ?",
            tuple(params + [limit]),
        )
        return {
            "query": query,
            "items": [_item_row(row) for row in rows],
            "total_count": int(count_row["cnt"]) if count_row else 0,
        }


class FilterItemsTool(ToolHandler):
    def __init__(self, db: Database):
        self.db = db

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name="filter_items",
            description="Filter Hacker News items by score, time window, comment count and author",
            category="DataQuery",
            parameters_schema={
                "type": "object",
                "properties": {
                    "score_range": _INT_RANGE_SCHEMA,
                    "time_range": _TIME_RANGE_SCHEMA,
                    "comment_count_range": _INT_RANGE_SCHEMA,
                    "authors": {"type": "array", "items": {"type": "string", "minLength": 1}, "maxItems": 100},
                    "item_type": {"type": "string", "enum": ITEM_TYPES},
                    "limit": _LIMIT_SCHEMA,
                },
            },
            examples=[
                ToolExample(
                    description="High scoring stories with active discussion",
                    parameters={"score_range": {"min": 100}, "comment_count_range": {"min": 50}, "limit": 20},
                )
            ],
            constraints=ToolConstraints(max_execution_time_ms=5000, max_result_size=1000, rate_limit_per_minute=60),
            tags=["filter", "items"],
        )

    async def execute(self, parameters: Dict[str, Any]) -> Any:
        clauses = ["deleted = 0"]
        params: List[Any] = []
        _apply_int_range(clauses, params, "score", parameters.get("score_range"))
        _apply_int_range(clauses, params, "descendants", parameters.get("comment_count_range"))
        _apply_time_range(clauses, params, parameters.get("time_range"))
        authors = parameters.get("authors") or []
        if authors:
            clauses.append(f"by IN ({', '.join('?' for _ in authors)})")
            params.extend(authors)
        if parameters.get("item_type"):
            clauses.append("item_type = ?")
            params.append(parameters["item_type"])
        limit = int(parameters.get("limit") or DEFAULT_LIMIT)
        where = _where(clauses)
        count_row = await self.db.fetchone(f"SELECT COUNT(*) AS cnt FROM hn_items{where}", tuple(params))
        rows = await self.db.fetchall(
            f"SELECT {_ITEM_COLUMNS} FROM hn_items{where} ORDER BY time DESC LIMIT ?",
            tuple(params + [limit]),
        )
        filters = {k: v for k, v in parameters.items() if k != "limit"}
        return {
            "items": [_item_row(row) for row in rows],
            "total_count": int(count_row["cnt"]) if count_row else 0,
            "filters_applied": filters,
        }


class SearchEntitiesTool(ToolHandler):
    def __init__(self, db: Database):
        self.db = db

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name="search_entities",
            description="Find extracted entities (companies, people, technologies) by name and type",
            category="EntityAnalysis",
            parameters_schema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "minLength": 1, "maxLength": 500},
                    "entity_type": {"type": "string", "minLength": 1},
                    "min_confidence": {"type": "number", "minimum": 0, "maximum": 1},
                    "limit": _LIMIT_SCHEMA,
                },
                "required": ["query"],
            },
            examples=[
                ToolExample(
                    description="Find AI companies",
                    parameters={"query": "AI", "entity_type": "company"},
                    expected_result="Companies whose name mentions AI, ranked by mentions",
                )
            ],
            constraints=ToolConstraints(max_execution_time_ms=3000, max_result_size=500, rate_limit_per_minute=100),
            tags=["search", "entities"],
        )

    async def execute(self, parameters: Dict[str, Any]) -> Any:
        query = str(parameters["query"])
        clauses = ["entity_value LIKE ?"]
        params: List[Any] = [f"%{query}%"]
        if parameters.get("entity_type"):
            clauses.append("entity_type = ?")
            params.append(parameters["entity_type"])
        if parameters.get("min_confidence") is not None:
            clauses.append("COALESCE(confidence, 0) >= ?")
            params.append(float(parameters["min_confidence"]))
        limit = int(parameters.get("limit") or DEFAULT_LIMIT)
        rows = await self.db.fetchall(
            f"""
            SELECT MIN(id) AS id, entity_value, entity_type, COUNT(*) AS mentions,
                   COUNT(DISTINCT item_id) AS item_count, AVG(confidence) AS avg_confidence
            FROM entities{_where(clauses)}
            GROUP BY entity_value, entity_type
            ORDER BY mentions DESC, entity_value ASC
            LIMIT ?
            """,
            tuple(params + [limit]),
        )
        return {
            "query": query,
            "entities": [
                {
                    "id": row["id"],
                    "name": row["entity_value"],
                    "entity_type": row["entity_type"],
                    "mentions": row["mentions"],
                    "item_count": row["item_count"],
                    "confidence": row["avg_confidence"],
                }
                for row in rows
            ],
            "total_count": len(rows),
        }


class ExploreRelationsTool(ToolHandler):
    def __init__(self, db: Database):
        self.db = db

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name="explore_relations",
            description="Explore relationships between extracted entities, optionally anchored on one entity",
            category="RelationExploration",
            parameters_schema={
                "type": "object",
                "properties": {
                    "entity_id": {"type": "integer", "minimum": 1},
                    "entity_name": {"type": "string", "minLength": 1},
                    "relation_type": {"type": "string", "minLength": 1},
                    "min_confidence": {"type": "number", "minimum": 0, "maximum": 1},
                    "limit": _LIMIT_SCHEMA,
                },
            },
            examples=[
                ToolExample(
                    description="Who founded which company",
                    parameters={"relation_type": "founded", "limit": 25},
                )
            ],
            constraints=ToolConstraints(max_execution_time_ms=4000, max_result_size=500, rate_limit_per_minute=60),
            tags=["relations", "exploration"],
        )

    def _filters(self, parameters: Dict[str, Any]) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if parameters.get("entity_id") is not None:
            clauses.append("(r.source_entity_id = ? OR r.target_entity_id = ?)")
            params.extend([int(parameters["entity_id"])] * 2)
        if parameters.get("entity_name"):
            clauses.append("(s.entity_value = ? OR t.entity_value = ?)")
            params.extend([parameters["entity_name"]] * 2)
        if parameters.get("relation_type"):
            clauses.append("r.relation_type = ?")
            params.append(parameters["relation_type"])
        if parameters.get("min_confidence") is not None:
            clauses.append("COALESCE(r.confidence, 0) >= ?")
            params.append(float(parameters["min_confidence"]))
        return _where(clauses), params

    async def execute(self, parameters: Dict[str, Any]) -> Any:
        where, params = self._filters(parameters)
        limit = int(parameters.get("limit") or DEFAULT_LIMIT)
        rows = await self.db.fetchall(
            f"""
            SELECT r.id, r.relation_type, r.confidence, r.item_id,
                   s.id AS source_id, s.entity_value AS source_name, s.entity_type AS source_type,
                   t.id AS target_id, t.entity_value AS target_name, t.entity_type AS target_type
            FROM entity_relations r
            JOIN entities s ON s.id = r.source_entity_id
            JOIN entities t ON t.id = r.target_entity_id{where}
            ORDER BY COALESCE(r.confidence, 0) DESC, r.id ASC
            LIMIT ?
            """,
            tuple(params + [limit]),
        )
        relations = [
            {
                "id": row["id"],
                "relation_type": row["relation_type"],
                "confidence": row["confidence"],
                "item_id": row["item_id"],
                "source": {"id": row["source_id"], "name": row["source_name"], "entity_type": row["source_type"]},
                "target": {"id": row["target_id"], "name": row["target_name"], "entity_type": row["target_type"]},
            }
            for row in rows
        ]
        return {"relations": relations, "total_count": len(relations)}


def default_registry(db: Database) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in (SearchItemsTool(db), FilterItemsTool(db), SearchEntitiesTool(db), ExploreRelationsTool(db)):
        registry.register(tool)
    return registry
