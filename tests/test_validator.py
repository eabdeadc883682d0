from __future__ import annotations

from core.validator import list_node_types, node_categories, validate_workflow


def test_clean_workflow_is_valid() -> None:
    report = validate_workflow(
        {
            "name": "t",
            "active": False,
            "nodes": [
                {"name": "Webhook", "type": "n8n-nodes-base.webhook", "parameters": {"path": "p"}},
                {"name": "Code", "type": "n8n-nodes-base.code", "parameters": {}},
            ],
            "connections": {"Webhook": {"main": [[{"node": "Code", "type": "main", "index": 0}]]}},
        }
    )
    assert report["isValid"] is True
    assert report["issues"] == []
    assert report["warnings"] == []
    assert report["summary"] == "Workflow looks good"
    assert report["nodeCount"] == 2


def test_missing_url_and_path_are_issues() -> None:
    report = validate_workflow(
        {
            "name": "t",
            "nodes": [
                {"name": "Hook", "type": "n8n-nodes-base.webhook", "parameters": {}},
                {"name": "Call", "type": "n8n-nodes-base.httpRequest", "parameters": {}},
            ],
            "connections": {"Hook": {"main": [[{"node": "Call", "type": "main", "index": 0}]]}},
        }
    )
    assert report["isValid"] is False
    assert any("missing a URL" in issue for issue in report["issues"])
    assert any("missing a path" in issue for issue in report["issues"])


def test_orphans_warn_but_start_node_is_exempt() -> None:
    report = validate_workflow(
        {
            "name": "t",
            "nodes": [
                {"name": "Start", "type": "n8n-nodes-base.start"},
                {"name": "Set", "type": "n8n-nodes-base.set"},
                {"name": "Lonely", "type": "n8n-nodes-base.set", "disabled": True},
            ],
            "connections": {"Set": {"main": [[{"node": "Set2", "type": "main", "index": 0}]]}},
        }
    )
    assert report["warnings"] == ["Node 'Lonely' is not connected to any other node"]
    assert "Node 'Lonely' is disabled" in report["info"]
    assert any("missing node 'Set2'" in issue for issue in report["issues"])


def test_duplicate_names_and_empty_workflow() -> None:
    report = validate_workflow(
        {"name": "t", "nodes": [{"name": "A", "type": "x"}, {"name": "A", "type": "x"}]}
    )
    assert any("Duplicate node name 'A'" in issue for issue in report["issues"])

    empty = validate_workflow({"name": "empty", "nodes": []})
    assert empty["warnings"] == ["Workflow has no nodes"]
    assert empty["isValid"] is True


def test_node_catalog_filters_by_category() -> None:
    assert len(list_node_types()) == 11
    data_nodes = list_node_types("data")
    assert {node["name"] for node in data_nodes} == {"Google Sheets", "Postgres", "MongoDB"}
    assert node_categories() == ["Communication", "Core Nodes", "Data"]
    assert list_node_types("nothing") == []
