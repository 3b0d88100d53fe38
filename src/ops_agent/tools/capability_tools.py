"""Cluster capability lookup tools.

The index is a plain keyword index over capability records supplied by the
caller (typically a JSON export of a previous cluster scan).
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ops_agent.tools import Tool

DEFAULT_SEARCH_LIMIT = 10
DEFAULT_QUERY_LIMIT = 100

_WORD = re.compile(r"[a-z0-9]+")


class Capability(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    resource_name: str = Field(alias="resourceName")
    group: str = ""
    api_version: str = Field(default="", alias="apiVersion")
    complexity: str = ""
    providers: list[str] = []
    capabilities: list[str] = []
    abstractions: list[str] = []
    description: str = ""
    use_case: str = Field(default="", alias="useCase")

    def payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    def keywords(self) -> dict[str, set[str]]:
        def words(*texts: str) -> set[str]:
            return {w for t in texts for w in _WORD.findall(t.lower())}

        return {
            "name": words(self.resource_name, self.group),
            "tags": words(*self.capabilities, *self.abstractions, *self.providers),
            "text": words(self.description, self.use_case),
        }


# Field weights for keyword scoring.
_WEIGHTS = {"name": 3.0, "tags": 2.0, "text": 1.0}


def _match_condition(payload: dict[str, Any], condition: dict[str, Any]) -> bool:
    key = condition.get("key")
    match = condition.get("match") or {}
    value = payload.get(key) if key else None
    if "value" in match:
        expected = match["value"]
        return expected in value if isinstance(value, list) else value == expected
    if "any" in match:
        options = set(match["any"])
        values = value if isinstance(value, list) else [value]
        return any(v in options for v in values)
    if "text" in match:
        return str(match["text"]).lower() in str(value or "").lower()
    return False


def matches_filter(payload: dict[str, Any], flt: dict[str, Any]) -> bool:
    """Evaluate a ``must``/``should``/``must_not`` filter against one record."""
    must = flt.get("must") or []
    should = flt.get("should") or []
    must_not = flt.get("must_not") or []
    if not all(_match_condition(payload, c) for c in must):
        return False
    if should and not any(_match_condition(payload, c) for c in should):
        return False
    return not any(_match_condition(payload, c) for c in must_not)


class CapabilityIndex:
    def __init__(self, capabilities: list[Capability] | None = None) -> None:
        self._items: list[Capability] = list(capabilities or [])

    @classmethod
    def from_file(cls, path: str | Path) -> CapabilityIndex:
        with open(path) as f:
            raw = json.load(f)
        return cls([Capability.model_validate(item) for item in raw])

    def __len__(self) -> int:
        return len(self._items)

    def add(self, capability: Capability) -> None:
        self._items.append(capability)

    def search(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> list[tuple[Capability, float]]:
        terms = set(_WORD.findall(query.lower()))
        if not terms:
            return []
        scored = []
        for item in self._items:
            fields = item.keywords()
            score = sum(_WEIGHTS[f] * len(terms & words) for f, words in fields.items())
            if score:
                scored.append((item, score / len(terms)))
        scored.sort(key=lambda pair: (-pair[1], pair[0].resource_name))
        return scored[:limit]

    def query(self, flt: dict[str, Any], limit: int = DEFAULT_QUERY_LIMIT) -> list[Capability]:
        return [item for item in self._items if matches_filter(item.payload(), flt)][:limit]


def create_capability_tools(index: CapabilityIndex) -> list[Tool]:
    def search_capabilities(args: dict) -> dict:
        query = args.get("query")
        if not query:
            return {
                "success": False,
                "error": "Missing required parameter: query",
                "message": "search_capabilities requires a query parameter",
            }
        results = index.search(query, int(args.get("limit") or DEFAULT_SEARCH_LIMIT))
        data = [{**cap.payload(), "score": round(score, 3)} for cap, score in results]
        return {
            "success": True,
            "data": data,
            "count": len(data),
            "message": f'Found {len(data)} capabilities matching "{query}"',
        }

    def query_capabilities(args: dict) -> dict:
        flt = args.get("filter")
        if not isinstance(flt, dict):
            return {
                "success": False,
                "error": "Missing required parameter: filter",
                "message": "query_capabilities requires a filter object with must/should/must_not conditions",
            }
        data = [cap.payload() for cap in index.query(flt, int(args.get("limit") or DEFAULT_QUERY_LIMIT))]
        return {
            "success": True,
            "data": data,
            "count": len(data),
            "message": f"Found {len(data)} capabilities matching filter",
        }

    return [
        Tool(
            name="search_capabilities",
            description=(
                "Keyword search for cluster capabilities. Use this to find what KINDS of "
                "resources relate to a concept (e.g. 'database' may return StatefulSet or a "
                "CNPG Cluster). Returns capability definitions, not resource instances; "
                "follow up with kubectl_get to find actual instances."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "Search terms, e.g. 'database', 'message queue', 'ingress controller'",
                    },
                    "limit": {
                        "type": "integer",
                        "description": f"Maximum results to return (default {DEFAULT_SEARCH_LIMIT}).",
                    },
                },
                "required": ["query"],
            },
            execute=search_capabilities,
            parallel_safe=True,
        ),
        Tool(
            name="query_capabilities",
            description=(
                "Filter capabilities by field. Fields: resourceName, group, apiVersion, "
                "providers, complexity, capabilities, abstractions, description, useCase. "
                'Example: {"must": [{"key": "complexity", "match": {"value": "low"}}, '
                '{"key": "providers", "match": {"any": ["kubernetes"]}}]}'
            ),
            parameters={
                "type": "object",
                "properties": {
                    "filter": {
                        "type": "object",
                        "description": "Filter object with must/should/must_not conditions",
                    },
                    "limit": {
                        "type": "integer",
                        "description": f"Maximum results to return (default {DEFAULT_QUERY_LIMIT}).",
                    },
                },
                "required": ["filter"],
            },
            execute=query_capabilities,
            parallel_safe=True,
        ),
    ]
