from __future__ import annotations

from offboard.domain.models import (
    ActivityLog,
    BlackboardConfirmation,
    BlackboardEntry,
    Message,
    MessageReadReceipt,
    User,
)
from offboard.services.deletion.steps import (
    DELETION_STEPS,
    PHASE_CORE,
    PHASE_LEAF_CLEANUP,
    PHASE_PRE_DELETION,
    PHASES,
    dependency_order,
)


def test_registry_declares_thirty_two_uniquely_named_steps() -> None:
    names = [step.name for step in DELETION_STEPS]
    assert len(names) == 32
    assert len(set(names)) == len(names)


def test_phases_never_go_backwards() -> None:
    positions = [PHASES.index(step.phase) for step in DELETION_STEPS]
    assert positions == sorted(positions)
    assert {step.phase for step in DELETION_STEPS} == set(PHASES)


def test_safety_checks_and_backups_run_first_and_are_critical() -> None:
    leading = [step.name for step in DELETION_STEPS[:4]]
    assert leading == ["check_legal_hold", "check_shared_resources", "create_data_export", "create_final_backup"]
    assert all(step.critical for step in DELETION_STEPS[:4])
    assert all(step.phase == PHASE_PRE_DELETION for step in DELETION_STEPS[:4])


def test_leaf_cleanup_steps_are_non_critical() -> None:
    leaf = [step for step in DELETION_STEPS if step.phase == PHASE_LEAF_CLEANUP]
    assert leaf
    assert not any(step.critical for step in leaf)


def test_requester_and_tenant_row_are_deleted_last_in_core() -> None:
    core = [step.name for step in DELETION_STEPS if step.phase == PHASE_CORE]
    assert core.index("delete_users") < core.index("delete_requester") < core.index("delete_tenant_record")
    names = [step.name for step in DELETION_STEPS]
    assert names.index("nullify_user_references") < names.index("delete_users")


def test_dependency_order_puts_dependents_first() -> None:
    ordered = dependency_order([User, Message, MessageReadReceipt, BlackboardEntry, BlackboardConfirmation])
    assert ordered.index(MessageReadReceipt) < ordered.index(Message)
    assert ordered.index(BlackboardConfirmation) < ordered.index(BlackboardEntry)
    assert ordered.index(Message) < ordered.index(User)


def test_dependency_order_keeps_only_requested_models() -> None:
    assert dependency_order([ActivityLog]) == [ActivityLog]


def test_core_entity_steps_are_critical() -> None:
    by_name = {step.name: step for step in DELETION_STEPS}
    assert by_name["delete_tenant_record"].critical is True
    assert by_name["delete_requester"].critical is True
    assert by_name["cleanup_queue_history"].critical is False
