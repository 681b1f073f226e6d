"""Tests for rebuilding instance data from archives."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import write_archive_instance

from bstatectl.inventory import ArchiveInventory
from bstatectl.models import InstanceData, Value
from bstatectl.rebuild import BackupRebuilder, RebuildError, render_plan, resolve_plan
from bstatectl.templates import TemplateEngine

DASHBOARD = "https://cloud.example.com/v2/proj-9#clusters/detail/foo"


def test_render_plan_binds_project_and_drops_api_key() -> None:
    """Project identity always comes from the context; credentials are cleared."""
    template = "name: {{ .plan_name }}\nproject:\n  id: wrong\napiKey:\n  publicKey: k\n"
    context = {"plan_name": "basic", "project_id": "proj-9", "org_id": "org-1"}

    plan = render_plan(TemplateEngine(), template, context)

    assert plan.name == "basic"
    assert plan.project is not None
    assert plan.project.id == "proj-9"
    assert plan.project.org_id == "org-1"
    assert plan.api_key is None


def test_render_plan_handles_sprig_templates() -> None:
    """Templates using sprig functions and control blocks render into plans."""
    template = (
        "name: {{ .plan_name | quote }}\n"
        "cluster:\n"
        "  name: {{ .instance_name | trunc 8 | quote }}\n"
        "  providerSettings:\n"
        '    providerName: {{ default "AWS" .provider_name }}\n'
        "    instanceSizeName: {{ .cluster_tier }}\n"
        '{{- if hasPrefix "M" .cluster_tier }}\n'
        "  backupEnabled: true\n"
        "{{- end }}\n"
        "apiKey:\n"
        '  publicKey: {{ keyByAlias .credentials "default" | quote }}\n'
    )
    context = {
        "plan_name": "basic",
        "instance_name": "cluster-long-name",
        "cluster_tier": "M10",
        "project_id": "proj-9",
        "org_id": "org-1",
    }

    plan = render_plan(TemplateEngine(), template, context)

    assert plan.name == "basic"
    assert plan.cluster == {
        "name": "cluster-",
        "providerSettings": {"providerName": "AWS", "instanceSizeName": "M10"},
        "backupEnabled": True,
    }
    assert plan.api_key is None


def test_render_plan_wraps_template_errors() -> None:
    """Broken templates surface as rebuild errors naming the instance."""
    context = {"instance_name": "inst-1", "project_id": "p", "org_id": "o"}

    with pytest.raises(RebuildError, match="inst-1"):
        render_plan(TemplateEngine(), "name: {{ .missing }}", context)


def test_rebuild_renders_every_snapshot_instance(tmp_path: Path) -> None:
    """Every value name in the snapshot gets rendered instance data."""
    write_archive_instance(tmp_path, "inst-1", dashboard_url=DASHBOARD, name="alpha")
    write_archive_instance(
        tmp_path,
        "inst-2",
        dashboard_url="https://cloud.example.com/v2/proj-2",
        name="beta",
        plan_guid="plan-2",
        cluster_tier="M30",
    )
    snapshot = {"A": {"inst-1": Value(name="inst-1")}, "B": {"inst-2": Value(name="inst-2")}}
    rebuilder = BackupRebuilder(ArchiveInventory(tmp_path), org_id="org-1")

    instances, summary = rebuilder.rebuild(snapshot)

    assert sorted(instances) == ["inst-1", "inst-2"]
    first = instances["inst-1"]
    assert first.name == "alpha"
    assert first.dashboard_url == DASHBOARD
    assert first.plan is not None
    assert first.plan.project is not None and first.plan.project.id == "proj-9"
    assert first.plan.cluster == {
        "name": "alpha",
        "providerSettings": {"providerName": "AWS", "instanceSizeName": "M10"},
    }
    second = instances["inst-2"].plan
    assert second is not None and second.cluster is not None
    assert second.cluster["providerSettings"]["instanceSizeName"] == "M30"
    assert summary.to_dict() == {"built": 2, "missing": [], "skipped": []}


def test_rebuild_skips_missing_and_excluded_instances(tmp_path: Path) -> None:
    """Instances gone upstream and excluded shards are left out."""
    write_archive_instance(tmp_path, "inst-1", dashboard_url=DASHBOARD)
    gone = tmp_path / "service_instances" / "inst-gone.json"
    gone.write_text('{"error_code": "CF-ServiceInstanceNotFound"}', encoding="utf-8")
    snapshot = {
        "A": {"inst-1": Value(name="inst-1"), "inst-gone": Value(name="inst-gone")},
        "X": {"inst-excluded": Value(name="inst-excluded")},
    }
    rebuilder = BackupRebuilder(
        ArchiveInventory(tmp_path), org_id="org-1", exclude_shards=frozenset({"X"})
    )

    instances, summary = rebuilder.rebuild(snapshot)

    assert list(instances) == ["inst-1"]
    assert summary.missing == ["inst-gone"]


def test_rebuild_stops_on_unreadable_records(tmp_path: Path) -> None:
    """An absent archive record is fatal for an offline rebuild."""
    rebuilder = BackupRebuilder(ArchiveInventory(tmp_path), org_id="org-1")

    with pytest.raises(RebuildError, match="inst-404"):
        rebuilder.rebuild({"A": {"inst-404": Value(name="inst-404")}})


def test_lazy_rebuild_defers_rendering(tmp_path: Path) -> None:
    """Without rendering, the template and context are kept for later."""
    write_archive_instance(tmp_path, "inst-1", dashboard_url=DASHBOARD, template="name: {{ .x }}")
    rebuilder = BackupRebuilder(ArchiveInventory(tmp_path), org_id="org-1", render=False)

    instances, _ = rebuilder.rebuild({"A": {"inst-1": Value(name="inst-1")}})

    data = instances["inst-1"]
    assert not data.is_rendered
    assert data.template == "name: {{ .x }}"
    assert data.context["project_id"] == "proj-9"
    assert data.context["cluster_tier"] == "M10"
    with pytest.raises(RebuildError):
        resolve_plan(data, TemplateEngine())


def test_resolve_plan_requires_plan_or_template() -> None:
    """Instance data with nothing to render cannot be resolved."""
    with pytest.raises(RebuildError, match="neither"):
        resolve_plan(InstanceData(name="n", dashboard_url=DASHBOARD), TemplateEngine())
