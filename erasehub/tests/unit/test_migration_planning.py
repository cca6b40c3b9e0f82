from __future__ import annotations

from datetime import datetime, timezone

from erasehub.domain.private_cloud import ALL_KINDS, EntityKind, KindClass
from erasehub.services.private_cloud.migration import (
    KindResult,
    MigrationReport,
    Ownership,
    RowFailure,
    kinds_for_all_tables,
    ownership_clause,
)


def _ownership() -> Ownership:
    return Ownership(
        tenant_id=10,
        tenant_email="a@x.com",
        subuser_ids=(100, 101),
        subuser_emails=("s1@x.com", "s2@x.com"),
    )


def test_all_tables_without_selection_covers_every_kind() -> None:
    assert kinds_for_all_tables(None) == list(ALL_KINDS)


def test_selection_narrows_tenant_data_but_keeps_reference_kinds() -> None:
    kinds = kinds_for_all_tables({EntityKind.AUDIT_REPORTS, EntityKind.USERS})
    reference = [kind for kind in ALL_KINDS if kind.kind_class is KindClass.REFERENCE]
    assert kinds == reference + [EntityKind.USERS, EntityKind.AUDIT_REPORTS]
    assert EntityKind.MACHINES not in kinds


def test_reference_kinds_have_no_ownership_filter() -> None:
    for kind in ALL_KINDS:
        clause = ownership_clause(kind, _ownership())
        if kind.kind_class is KindClass.REFERENCE:
            assert clause is None
        else:
            assert clause is not None


def test_machine_filter_matches_tenant_and_subuser_owners() -> None:
    clause = ownership_clause(EntityKind.MACHINES, _ownership())
    compiled = clause.compile(compile_kwargs={"literal_binds": True})
    sql = str(compiled)
    assert "machines.user_email IN ('a@x.com', 's1@x.com', 's2@x.com')" in sql
    assert "machines.subuser_email IN ('s1@x.com', 's2@x.com')" in sql


def test_linking_filters_use_owner_ids() -> None:
    user_roles = str(
        ownership_clause(EntityKind.USER_ROLES, _ownership()).compile(compile_kwargs={"literal_binds": True})
    )
    subuser_roles = str(
        ownership_clause(EntityKind.SUBUSER_ROLES, _ownership()).compile(compile_kwargs={"literal_binds": True})
    )
    assert user_roles == "user_roles.user_id = 10"
    assert subuser_roles == "subuser_roles.subuser_id IN (100, 101)"


def test_report_status_and_ordering() -> None:
    report = MigrationReport(
        tenant_email="a@x.com",
        variant="all",
        started_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    report.kinds[EntityKind.MACHINES] = KindResult(found=2, migrated=2)
    report.kinds[EntityKind.ROLES] = KindResult(found=5, migrated=4, failed=1)
    report.failures.append(
        RowFailure(kind=EntityKind.ROLES, key="5", error_type="IntegrityError", message="duplicate")
    )
    payload = report.to_dict()
    assert report.status == "partial"
    assert list(payload["tables"]) == ["Roles", "Machines"]
    assert payload["totals"] == {"found": 7, "migrated": 6, "failed": 1}
    assert payload["failures"][0]["table"] == "Roles"

    clean = MigrationReport(tenant_email="a@x.com", variant="primary", started_at=report.started_at)
    clean.result_for(EntityKind.USERS).found = 1
    assert clean.status == "completed"
