from __future__ import annotations

import pytest

from kubeforge.exceptions import ManifestSyntaxError
from kubeforge.schemas.workload import BlueGreenStrategy, Container, CronJobSpec, RolloutSpec, WorkloadKind
from kubeforge.services.manifest import build_diff, dump_manifest, load_manifest, validate_model, validate_text
from tests.conftest import make_model


def test_identical_texts_have_no_changes() -> None:
    diff = build_diff("a: 1\nb: 2\n", "a: 1\nb: 2\n")

    assert diff.identical is True
    assert diff.unified == ""
    assert [row.tag for row in diff.rows] == ["equal", "equal"]


def test_side_by_side_rows_pair_lines() -> None:
    diff = build_diff("a: 1\nb: 2\nc: 3\n", "a: 1\nb: 20\nc: 3\nd: 4\n", label="deployment/web")

    assert diff.added == 2
    assert diff.removed == 1
    assert diff.unified.startswith("--- original/deployment/web\n+++ modified/deployment/web\n")
    changed = [(row.tag, row.left_number, row.right_number) for row in diff.rows if row.tag != "equal"]
    assert changed == [("replace", 2, 2), ("insert", None, 4)]


def test_deleted_lines_have_no_right_side() -> None:
    diff = build_diff("a: 1\nb: 2\n", "a: 1\n")

    assert [(row.tag, row.left, row.right) for row in diff.rows] == [("equal", "a: 1", "a: 1"), ("delete", "b: 2", None)]


def test_valid_model_has_no_issues() -> None:
    assert validate_model(WorkloadKind.DEPLOYMENT, make_model()) == []


@pytest.mark.parametrize(
    ("name", "valid"),
    [("web", True), ("web-01", True), ("Web", False), ("-web", False), ("web_app", False), ("a" * 63, True), ("a" * 64, False)],
)
def test_workload_names_must_be_dns_labels(name: str, valid: bool) -> None:
    issues = validate_model(WorkloadKind.DEPLOYMENT, make_model(name=name))

    assert (not issues) is valid


def test_missing_name_and_containers() -> None:
    model = make_model(name="")
    model.pod.containers = []

    fields = [issue.field for issue in validate_model(WorkloadKind.JOB, model)]

    assert fields == ["metadata.name", "containers"]


def test_duplicate_container_names_and_blank_images() -> None:
    model = make_model()
    model.pod.containers.append(Container(name="web", image="   "))

    fields = [issue.field for issue in validate_model(WorkloadKind.DEPLOYMENT, model)]

    assert fields == ["containers[1].name", "containers[1].image"]


def test_cronjob_requires_schedule() -> None:
    model = make_model(WorkloadKind.CRONJOB, cronjob=CronJobSpec(schedule=" "))

    assert [i.field for i in validate_model(WorkloadKind.CRONJOB, model)] == ["spec.schedule"]


def test_blue_green_requires_active_service() -> None:
    model = make_model(WorkloadKind.ROLLOUT, rollout=RolloutSpec(blue_green=BlueGreenStrategy()))

    assert [i.field for i in validate_model(WorkloadKind.ROLLOUT, model)] == ["spec.strategy.blueGreen.activeService"]


def test_validate_text_propagates_syntax_errors() -> None:
    with pytest.raises(ManifestSyntaxError):
        validate_text("kind: Deployment\nmetadata: {name: web\n")


def test_emitter_quotes_cron_schedule_from_any_source() -> None:
    document = load_manifest("apiVersion: batch/v1\nkind: CronJob\nspec:\n  schedule: '0 * * * *'\n")

    assert 'schedule: "0 * * * *"' in dump_manifest(document)


def test_emitter_keeps_key_order_and_indentless_lists() -> None:
    text = dump_manifest({"kind": "Job", "spec": {"args": ["a", "b"]}, "apiVersion": "batch/v1"})

    assert text == "kind: Job\nspec:\n  args:\n  - a\n  - b\napiVersion: batch/v1\n"
