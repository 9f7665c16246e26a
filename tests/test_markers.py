from __future__ import annotations

from dockhand_mcp.orchestration.markers import DEFAULT_SUMMARY, OutputCollector, parse_output


def test_parse_output_classifies_markers() -> None:
    output = parse_output(
        [
            "Working on it",
            "Created file: src/app.py",
            "Committed: 1a2b3c4",
            "Created PR: https://github.com/acme/api/pull/7",
            "Opened issue: https://github.com/acme/api/issues/8",
            "Posted comment: https://github.com/acme/api/issues/8#c1",
            "Summary: Added the endpoint",
            "Next step: Deploy to staging",
            "Next step: Update the docs",
        ]
    )

    assert len(output.logs) == 9
    assert [(artifact.type, artifact.path or artifact.sha or artifact.url) for artifact in output.artifacts] == [
        ("file", "src/app.py"),
        ("commit", "1a2b3c4"),
        ("pr", "https://github.com/acme/api/pull/7"),
        ("issue", "https://github.com/acme/api/issues/8"),
        ("comment", "https://github.com/acme/api/issues/8#c1"),
    ]
    assert output.summary == "Added the endpoint"
    assert output.next_steps == ["Deploy to staging", "Update the docs"]


def test_default_summary_when_none_reported() -> None:
    output = parse_output(["plain line"])

    assert output.summary == DEFAULT_SUMMARY
    assert output.next_steps == []
    assert output.artifacts == []


def test_marker_with_empty_value_is_ignored() -> None:
    collector = OutputCollector()

    assert collector.classify("Created file:   ") is None
    assert collector.artifacts == []


def test_raw_lines_are_logged_but_not_classified() -> None:
    collector = OutputCollector()
    collector.add_raw("Summary: should not count")
    collector.add("Summary: counted")

    output = collector.build()
    assert output.logs == ["Summary: should not count", "Summary: counted"]
    assert output.summary == "counted"
