"""
Authorization gate tests.

Every (role, operation, relationship) cell of the permission table is
checked here. The gate is pure, so no database or fixtures are needed.
"""

from datetime import timedelta
from itertools import product
from uuid import uuid4

import pytest

from ctms.engine.errors import AuthorizationDenied
from ctms.engine.policy import (
    Allow,
    Deny,
    NewTaskRequest,
    TaskRelation,
    UserChange,
    authorize,
    require,
)
from ctms.models import Actor, Operation, Role, Task
from ctms.utils.time import utc_now

TEAM = uuid4()
OTHER_TEAM = uuid4()
STRANGER = uuid4()

RELATIONS = ("creator", "assignee", "same_team", "other_team", "no_team")
TASK_OPERATIONS = (
    Operation.READ_TASK,
    Operation.COMMENT_TASK,
    Operation.UPDATE_TASK,
    Operation.REASSIGN_TASK,
    Operation.DELETE_TASK,
)


def actor_for(role: Role) -> Actor:
    return Actor(
        id=uuid4(),
        email=f"{role.value}@example.com",
        full_name=role.value.title(),
        role=role,
        team_id=None if role in (Role.ADMIN, Role.HR) else TEAM,
    )


def relation(actor: Actor, kind: str) -> TaskRelation:
    if kind == "creator":
        return TaskRelation(creator_id=actor.id, assignee_ids=frozenset({STRANGER}), team_id=TEAM)
    if kind == "assignee":
        return TaskRelation(creator_id=STRANGER, assignee_ids=frozenset({actor.id, STRANGER}), team_id=TEAM)
    if kind == "same_team":
        return TaskRelation(creator_id=STRANGER, assignee_ids=frozenset({STRANGER}), team_id=TEAM)
    if kind == "other_team":
        return TaskRelation(creator_id=STRANGER, assignee_ids=frozenset({STRANGER}), team_id=OTHER_TEAM)
    return TaskRelation(creator_id=STRANGER, assignee_ids=frozenset({STRANGER}), team_id=None)


def row(*reasons):
    """Expected outcome per relationship, in RELATIONS order. None means allowed."""
    return dict(zip(RELATIONS, reasons))


ALLOW_ALL = row(None, None, None, None, None)

VISIBILITY = {
    Role.ADMIN: ALLOW_ALL,
    Role.HR: ALLOW_ALL,
    Role.TEAM_LEAD: row(None, None, None, "not_visible", "not_visible"),
    Role.MEMBER: row(None, None, "not_visible", "not_visible", "not_visible"),
}

TASK_TABLE = {
    Operation.READ_TASK: VISIBILITY,
    Operation.COMMENT_TASK: VISIBILITY,
    Operation.UPDATE_TASK: {
        Role.ADMIN: ALLOW_ALL,
        Role.HR: ALLOW_ALL,
        Role.TEAM_LEAD: ALLOW_ALL,
        Role.MEMBER: row(None, None, "access_denied", "access_denied", "access_denied"),
    },
    Operation.REASSIGN_TASK: {
        Role.ADMIN: ALLOW_ALL,
        Role.HR: ALLOW_ALL,
        Role.TEAM_LEAD: ALLOW_ALL,
        Role.MEMBER: row(*["reassign_not_permitted"] * 5),
    },
    Operation.DELETE_TASK: {
        Role.ADMIN: ALLOW_ALL,
        Role.HR: ALLOW_ALL,
        Role.TEAM_LEAD: ALLOW_ALL,
        Role.MEMBER: row(*["role_not_permitted"] * 5),
    },
}


def assert_decision(decision, expected_reason):
    if expected_reason is None:
        assert isinstance(decision, Allow)
        assert decision.allowed is True
    else:
        assert isinstance(decision, Deny)
        assert decision.allowed is False
        assert decision.reason == expected_reason


@pytest.mark.parametrize("operation,role,kind", list(product(TASK_OPERATIONS, Role, RELATIONS)))
def test_task_operation_cell(operation, role, kind):
    actor = actor_for(role)
    decision = authorize(actor, operation, relation(actor, kind))
    assert_decision(decision, TASK_TABLE[operation][role][kind])


def test_team_lead_without_team_sees_no_team_tasks():
    lead = actor_for(Role.TEAM_LEAD).model_copy(update={"team_id": None})
    decision = authorize(lead, Operation.READ_TASK, relation(lead, "no_team"))
    assert_decision(decision, "not_visible")


CREATE_REQUESTS = ("omitted", "empty", "self", "other", "self_and_other")

CREATE_TABLE = {
    Role.ADMIN: dict.fromkeys(CREATE_REQUESTS),
    Role.HR: dict.fromkeys(CREATE_REQUESTS),
    Role.TEAM_LEAD: dict.fromkeys(CREATE_REQUESTS),
    Role.MEMBER: {
        "omitted": None,
        "empty": None,
        "self": None,
        "other": "forbidden_self_assign_only",
        "self_and_other": "forbidden_self_assign_only",
    },
}


def create_request(actor: Actor, kind: str) -> NewTaskRequest:
    return {
        "omitted": NewTaskRequest(),
        "empty": NewTaskRequest(assignee_ids=frozenset()),
        "self": NewTaskRequest(assignee_ids=frozenset({actor.id})),
        "other": NewTaskRequest(assignee_ids=frozenset({STRANGER})),
        "self_and_other": NewTaskRequest(assignee_ids=frozenset({actor.id, STRANGER})),
    }[kind]


@pytest.mark.parametrize("role,kind", list(product(Role, CREATE_REQUESTS)))
def test_create_task_cell(role, kind):
    actor = actor_for(role)
    decision = authorize(actor, Operation.CREATE_TASK, create_request(actor, kind))
    assert_decision(decision, CREATE_TABLE[role][kind])


USER_CHANGES = ("member_in_team", "lead_in_team", "admin_no_team", "admin_with_team")

USER_MANAGER_ROW = {
    "member_in_team": None,
    "lead_in_team": None,
    "admin_no_team": None,
    "admin_with_team": "admin_no_team",
}

MANAGE_USER_TABLE = {
    Role.ADMIN: USER_MANAGER_ROW,
    Role.HR: USER_MANAGER_ROW,
    Role.TEAM_LEAD: dict.fromkeys(USER_CHANGES, "role_not_permitted"),
    Role.MEMBER: dict.fromkeys(USER_CHANGES, "role_not_permitted"),
}


def user_change(kind: str) -> UserChange:
    return {
        "member_in_team": UserChange(role=Role.MEMBER, team_id=TEAM),
        "lead_in_team": UserChange(role=Role.TEAM_LEAD, team_id=TEAM),
        "admin_no_team": UserChange(role=Role.ADMIN),
        "admin_with_team": UserChange(role=Role.ADMIN, team_id=TEAM),
    }[kind]


@pytest.mark.parametrize("role,kind", list(product(Role, USER_CHANGES)))
def test_manage_user_cell(role, kind):
    decision = authorize(actor_for(role), Operation.MANAGE_USER, user_change(kind))
    assert_decision(decision, MANAGE_USER_TABLE[role][kind])


@pytest.mark.parametrize(
    "operation,role", list(product((Operation.VIEW_AUDIT, Operation.PURGE_AUDIT), Role))
)
def test_audit_operations_are_admin_only(operation, role):
    decision = authorize(actor_for(role), operation)
    assert_decision(decision, None if role is Role.ADMIN else "role_not_permitted")


def test_every_operation_is_covered():
    covered = set(TASK_TABLE) | {
        Operation.CREATE_TASK,
        Operation.MANAGE_USER,
        Operation.VIEW_AUDIT,
        Operation.PURGE_AUDIT,
    }
    assert covered == set(Operation)


def test_authorize_accepts_task_model():
    member = actor_for(Role.MEMBER)
    now = utc_now()
    task = Task(
        id=uuid4(),
        title="Quarterly report",
        created_by=STRANGER,
        assigned_to=frozenset({member.id}),
        team_id=OTHER_TEAM,
        due_date=now + timedelta(days=1),
        created_at=now,
        updated_at=now,
    )
    assert isinstance(authorize(member, Operation.UPDATE_TASK, task), Allow)
    assert isinstance(authorize(member, Operation.READ_TASK, task), Allow)


def test_require_raises_with_reason():
    member = actor_for(Role.MEMBER)
    with pytest.raises(AuthorizationDenied) as exc_info:
        require(member, Operation.DELETE_TASK, relation(member, "creator"))
    assert exc_info.value.reason == "role_not_permitted"
    assert exc_info.value.status_code == 403

    require(actor_for(Role.HR), Operation.DELETE_TASK, relation(member, "creator"))
