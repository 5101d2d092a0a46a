from pathlib import Path
import textwrap

import pytest

from todoflow_mcp.enums import WorkflowApproach
from todoflow_mcp.workflows import TemplateLibrary, TemplateLoadError


def write_template(path: Path, *, first_step: str) -> None:
    path.write_text(
        textwrap.dedent(
            """
            approach: approval_workflow
            title: Custom approval
            steps:
              - content: {first_step}
                instructions: Draft the change request
                approval_required: true
              - content: Apply the change
                estimated_duration: 2 hours
            """
        ).strip().format(first_step=first_step),
        encoding="utf-8",
    )


def test_builtin_templates_cover_every_approach() -> None:
    library = TemplateLibrary()
    templates = library.load_all()

    assert set(templates) == set(WorkflowApproach)
    rendered = library.render("multi_phase_discovery", "Ship the feature")
    assert len(rendered) == 3
    assert rendered[0].guidance.parent_objective == "Complete user request: Ship the feature..."


def test_later_paths_override_earlier_ones(tmp_path: Path) -> None:
    base = tmp_path / "base"
    base.mkdir()
    override = tmp_path / "override"
    override.mkdir()

    write_template(base / "approval.yaml", first_step="Base step")
    write_template(override / "approval.yml", first_step="Override step")

    library = TemplateLibrary([base, override])
    tasks = library.render(WorkflowApproach.APPROVAL_WORKFLOW, "Rotate credentials")

    assert tasks[0].content == "Override step"
    assert tasks[0].guidance.approval_required is True
    assert tasks[1].estimated_duration == "2 hours"
    assert library.get("multi_phase_discovery").steps[0].content.startswith("Analysis")


def test_missing_directories_are_ignored(tmp_path: Path) -> None:
    library = TemplateLibrary([tmp_path / "does-not-exist"])

    assert library.search_paths == []
    assert len(library.get("single_task").steps) == 2


def test_loader_reports_validation_error(tmp_path: Path) -> None:
    invalid = tmp_path / "invalid"
    invalid.mkdir()
    (invalid / "broken.yaml").write_text("approach: approval_workflow\nsteps: []", encoding="utf-8")

    library = TemplateLibrary([invalid])

    with pytest.raises(TemplateLoadError):
        library.load_all()
