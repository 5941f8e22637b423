"""Tests for the query planner and the query worker's graph reads."""

import pytest

from codegraph_conductor.conductor import Conductor
from codegraph_conductor.errors import NotFoundError
from codegraph_conductor.query import QueryPlanner


@pytest.fixture
def planner() -> QueryPlanner:
    return QueryPlanner()


class TestQueryPlanner:
    @pytest.mark.parametrize("text,intent,target", [
        ("who calls validate_email?", "callers", "validate_email"),
        ("usages of `parse_file`", "callers", "parse_file"),
        ("what does create_user call", "callees", "create_user"),
        ("where is GraphStore defined?", "definition", "GraphStore"),
        ("definition of utils.format_name", "definition", "utils.format_name"),
        ("what depends on validate_email", "impact", "validate_email"),
        ("impact of changing User", "impact", "User"),
        ("subclasses of BaseModel", "subclasses", "BaseModel"),
        ("which classes inherit from User", "subclasses", "User"),
    ])
    def test_symbol_intents(self, planner: QueryPlanner, text: str, intent: str, target: str):
        plan = planner.plan(text)
        assert plan.intent == intent
        assert plan.target == target

    def test_definition_with_kind(self, planner: QueryPlanner):
        plan = planner.plan("find the class User")
        assert plan.intent == "definition"
        assert plan.kinds == ["class"]

    def test_file_entities(self, planner: QueryPlanner):
        plan = planner.plan("list functions in pkg\\utils.py")
        assert plan.intent == "file_entities"
        assert plan.file_path == "pkg/utils.py"
        assert plan.kinds == ["function"]

        plan = planner.plan("what classes are in models.py?")
        assert plan.kinds == ["class"]
        assert plan.file_path == "models.py"

    def test_fallback_is_search(self, planner: QueryPlanner):
        plan = planner.plan("email validation helpers", limit=3)
        assert plan.intent == "search"
        assert plan.target == "email validation helpers"
        assert plan.limit == 3

    def test_plan_dict_uses_camel_case(self, planner: QueryPlanner):
        payload = planner.plan("functions in utils.py").to_dict()
        assert payload["filePath"] == "utils.py"
        assert "file_path" not in payload


class TestNaturalLanguageQuery:
    async def test_callers(self, indexed_conductor: Conductor):
        result = await indexed_conductor.submit("query", {"query": "who calls validate_email"})

        assert result["plan"]["intent"] == "callers"
        assert "UserProcessor.create_user" in [r["qualname"] for r in result["results"]]

    async def test_callees(self, indexed_conductor: Conductor):
        result = await indexed_conductor.submit(
            "query", {"query": "what does OrderProcessor.calculate_order_total call"},
        )
        assert [r["qualname"] for r in result["results"]] == ["calculate_total"]

    async def test_definition(self, indexed_conductor: Conductor):
        result = await indexed_conductor.submit("query", {"query": "where is User defined"})

        assert [(r["qualname"], r["filePath"]) for r in result["results"]] == [("User", "models.py")]

    async def test_subclasses(self, indexed_conductor: Conductor):
        result = await indexed_conductor.submit("query", {"query": "subclasses of User"})
        assert [r["qualname"] for r in result["results"]] == ["AdminUser"]

    async def test_impact(self, indexed_conductor: Conductor):
        result = await indexed_conductor.submit("query", {"query": "what depends on validate_email"})

        by_name = {r["qualname"]: r["depth"] for r in result["results"] if r["kind"] != "import"}
        assert by_name["UserProcessor.create_user"] == 1
        assert by_name["main"] == 2

    async def test_file_entities(self, indexed_conductor: Conductor):
        result = await indexed_conductor.submit("query", {"query": "list functions in utils.py"})
        assert [r["name"] for r in result["results"]] == ["validate_email", "format_name", "calculate_total"]

    async def test_search_fallback(self, indexed_conductor: Conductor):
        result = await indexed_conductor.submit("query", {"query": "order total tax", "limit": 3})

        assert result["plan"]["intent"] == "search"
        assert 0 < result["total"] <= 3
        assert "entityId" in result["results"][0]

    async def test_unknown_symbol_gives_message(self, indexed_conductor: Conductor):
        result = await indexed_conductor.submit("query", {"query": "who calls does_not_exist"})

        assert result["results"] == []
        assert "does_not_exist" in result["message"]


class TestGraphReads:
    async def test_list_file_entities(self, indexed_conductor: Conductor):
        result = await indexed_conductor.submit(
            "list_file_entities", {"filePath": "./utils.py", "entityTypes": ["function"]},
        )

        assert result["filePath"] == "utils.py"
        assert result["status"] == "indexed"
        assert result["total"] == 3

    async def test_list_file_entities_unknown_file(self, indexed_conductor: Conductor):
        with pytest.raises(NotFoundError) as excinfo:
            await indexed_conductor.submit("list_file_entities", {"filePath": "nope.py"}, request_id="r-1")
        assert excinfo.value.request_id == "r-1"

    async def test_list_entity_relationships(self, indexed_conductor: Conductor):
        result = await indexed_conductor.submit(
            "list_entity_relationships",
            {"entityName": "validate_email", "relationshipTypes": ["calls"]},
        )

        assert result["entity"]["qualname"] == "validate_email"
        assert [(e["source"], e["direction"], e["depth"]) for e in result["relationships"]] == [
            ("UserProcessor.create_user", "incoming", 1),
        ]

    async def test_list_entity_relationships_depth(self, indexed_conductor: Conductor):
        result = await indexed_conductor.submit(
            "list_entity_relationships",
            {"entityName": "validate_email", "relationshipTypes": ["calls"], "depth": 2},
        )

        second_hop = {(e["source"], e["target"]) for e in result["relationships"] if e["depth"] == 2}
        assert ("main", "UserProcessor.create_user") in second_hop

    async def test_analyze_code_impact_entity(self, indexed_conductor: Conductor):
        result = await indexed_conductor.submit("analyze_code_impact", {"entityId": "validate_email"})

        assert result["roots"][0]["qualname"] == "validate_email"
        assert result["riskLevel"] == "low"
        assert "main.py" in result["affectedFiles"]
        assert "<-calls- UserProcessor.create_user" in result["graph"]
        assert result["graph"].splitlines()[0] == "validate_email"

    async def test_analyze_code_impact_file(self, indexed_conductor: Conductor):
        result = await indexed_conductor.submit("analyze_code_impact", {"filePath": "utils.py", "depth": 1})

        assert len(result["roots"]) == 3
        assert "graph" not in result
        assert {e["depth"] for e in result["impacted"]} == {1}

    async def test_analyze_hotspots(self, indexed_conductor: Conductor):
        for metric in ("complexity", "coupling", "changes"):
            result = await indexed_conductor.submit("analyze_hotspots", {"metric": metric, "limit": 5})
            scores = [h["score"] for h in result["hotspots"]]
            assert result["metric"] == metric
            assert 0 < len(scores) <= 5
            assert scores == sorted(scores, reverse=True)

    async def test_get_graph(self, indexed_conductor: Conductor):
        result = await indexed_conductor.submit("get_graph", {"query": "processor"})

        ids = {e["id"] for e in result["entities"]}
        assert result["totalEntities"] == len(ids)
        assert all(r["sourceId"] in ids and r["targetId"] in ids for r in result["relationships"])
        assert result["totalRelationships"] > 0

    async def test_graph_stats_and_health(self, indexed_conductor: Conductor):
        stats = await indexed_conductor.submit("get_graph_stats")
        assert stats["files"] == 4
        assert stats["entitiesByKind"]["class"] == 5

        health = await indexed_conductor.submit("get_graph_health", {"sample": 2})
        assert health["healthy"] is True
        assert len(health["sample"]) == 2

        unhealthy = await indexed_conductor.submit("get_graph_health", {"minEntities": 100000})
        assert unhealthy["healthy"] is False
        assert unhealthy["issues"]
