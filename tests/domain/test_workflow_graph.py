import pytest
from pydantic import ValidationError

from flowrun.domain.graph import WorkflowGraph
from flowrun.domain.graph_model import GraphDefinition


def test_definition_parses_nodes_and_edges(graph_definition):
    assert [j.id for j in graph_definition.jobs] == ["job-a", "job-b", "job-c", "job-d"]
    assert graph_definition.trigger("trigger-1").type == "webhook"
    assert graph_definition.job("job-x") is None


def test_edge_to_unknown_node_is_rejected():
    with pytest.raises(ValidationError):
        GraphDefinition.model_validate({
            "jobs": [{"id": "a", "name": "a", "adaptor": "common"}],
            "triggers": [],
            "edges": [{"source": "a", "target": "missing"}],
        })


def test_js_edge_needs_expression():
    with pytest.raises(ValidationError):
        GraphDefinition.model_validate({
            "jobs": [{"id": "a", "name": "a", "adaptor": "common"}, {"id": "b", "name": "b", "adaptor": "common"}],
            "edges": [{"source": "a", "target": "b", "condition_type": "js_expression"}],
        })


def test_cron_trigger_needs_expression():
    with pytest.raises(ValidationError):
        GraphDefinition.model_validate({"triggers": [{"id": "t", "type": "cron"}]})


def test_first_job_and_descendants(graph_definition):
    graph = WorkflowGraph(graph_definition)
    assert graph.first_job_for("trigger-1") == "job-a"
    assert graph.descendants_of("job-a") == {"job-b", "job-c", "job-d"}
    assert graph.descendants_of("job-c") == set()


@pytest.mark.parametrize(
    "job_id, expected",
    [
        ("job-a", set()),
        ("job-b", {"job-a", "job-d"}),
        ("job-c", {"job-a", "job-b", "job-d"}),
        ("job-d", {"job-a", "job-b", "job-c"}),
    ],
)
def test_upstream_is_reachable_without_passing_through_job(graph_definition, job_id, expected):
    assert WorkflowGraph(graph_definition).upstream_of(job_id) == expected


def test_upstream_ignores_edge_conditions_and_disabled_edges():
    definition = GraphDefinition.model_validate({
        "jobs": [{"id": "a", "name": "a", "adaptor": "x"}, {"id": "b", "name": "b", "adaptor": "x"}],
        "triggers": [{"id": "t", "type": "webhook"}],
        "edges": [
            {"source": "t", "target": "a"},
            {"source": "a", "target": "b", "condition_type": "js_expression",
             "condition_expression": "state.ok", "enabled": False},
        ],
    })
    assert WorkflowGraph(definition).upstream_of("b") == {"a"}


def test_upstream_in_a_diamond_excludes_the_join_descendants():
    definition = GraphDefinition.model_validate({
        "jobs": [{"id": n, "name": n, "adaptor": "x"} for n in ("a", "b", "c", "d", "e")],
        "triggers": [{"id": "t", "type": "webhook"}],
        "edges": [
            {"source": "t", "target": "a"},
            {"source": "a", "target": "b"},
            {"source": "a", "target": "c"},
            {"source": "b", "target": "d"},
            {"source": "c", "target": "d"},
            {"source": "d", "target": "e"},
        ],
    })
    graph = WorkflowGraph(definition)
    assert graph.upstream_of("d") == {"a", "b", "c"}
    assert graph.upstream_of("b") == {"a", "c"}
