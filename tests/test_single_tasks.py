import pytest
from sqlmodel import Session, select

from chorehub.models import ClaimableResource, ClaimState, Task, TaskStatus

DEADLINE = "2025-01-16T09:00:00"


@pytest.fixture
def board(client, make_client):
    """A parent with three children, each logged in on their own client."""
    body = client.post(
        "/register",
        data={
            "display_name": "Parent",
            "email": "parent@example.com",
            "password": "pw",
            "household_name": "Home",
        },
    ).json()
    household_id = body["household"]["id"]
    kids = {}
    for name in ("anna", "ben", "cleo"):
        child = client.post(
            f"/households/{household_id}/children",
            data={"display_name": name.title(), "email": f"{name}@example.com", "password": "pw"},
        ).json()
        kid_client = make_client()
        kid_client.post("/login", data={"email": f"{name}@example.com", "password": "pw"})
        kids[name] = (child["id"], kid_client)
    return client, household_id, kids


def post_task(board, names=("anna", "ben", "cleo"), **extra):
    parent, household_id, kids = board
    data = {
        "title": "Walk the dog",
        "points": 5,
        "candidate_ids": [kids[name][0] for name in names],
        **extra,
    }
    return parent.post(f"/households/{household_id}/single-tasks", data=data)


def task_url(board, task_id, suffix):
    _, household_id, _ = board
    return f"/households/{household_id}/tasks/{task_id}/{suffix}"


def test_first_accept_wins_and_releases_the_rest(board, session: Session):
    parent, household_id, kids = board
    created = post_task(board)
    assert created.status_code == 201
    task_id = created.json()["task"]["id"]
    assert created.json()["task"]["status"] == "open"
    assert [offer["status"] for offer in created.json()["offers"]] == ["open"] * 3

    _, ben = kids["ben"]
    accepted = ben.post(task_url(board, task_id, "accept"))
    assert accepted.status_code == 201
    assert accepted.json()["siblings_released"] == 2
    assert accepted.json()["offer"]["status"] == "claimed"

    _, anna = kids["anna"]
    late = anna.post(task_url(board, task_id, "accept"))
    assert late.status_code == 409
    assert late.json()["detail"]["reason"] == "already_claimed_by_other"
    assert late.json()["detail"]["state"] == "released"

    candidates = parent.get(task_url(board, task_id, "candidates")).json()
    assert candidates["task"]["status"] == "assigned"
    assert candidates["task"]["assignee_user_id"] == kids["ben"][0]
    assert [(c["display_name"], c["state"]) for c in candidates["candidates"]] == [
        ("Anna", "released"),
        ("Ben", "claimed"),
        ("Cleo", "released"),
    ]
    task = session.get(Task, task_id)
    assert task.status == TaskStatus.assigned


def test_create_validates_candidates(board):
    parent, household_id, kids = board
    assert post_task(board, title=" ").status_code == 400
    parent_id = parent.get("/me").json()["user"]["id"]
    resp = parent.post(
        f"/households/{household_id}/single-tasks",
        data={"title": "Mow", "candidate_ids": [parent_id]},
    )
    assert resp.status_code == 400
    assert post_task(board, deadline="2024-12-31T00:00:00").status_code == 400

    _, anna = kids["anna"]
    assert anna.post(
        f"/households/{household_id}/single-tasks",
        data={"title": "Mow", "candidate_ids": [kids["ben"][0]]},
    ).status_code == 403


def test_available_tasks_follow_decline_and_undo(board):
    task_id = post_task(board, deadline=DEADLINE).json()["task"]["id"]
    anna_id, anna = board[2]["anna"]

    available = anna.get("/users/me/available-tasks").json()["tasks"]
    assert [task["id"] for task in available] == [task_id]
    assert available[0]["candidate_count"] == 3
    assert available[0]["days_until_deadline"] == 1

    declined = anna.post(task_url(board, task_id, "decline"))
    assert declined.status_code == 200
    assert declined.json()["offer"]["status"] == "released"
    assert anna.get("/users/me/available-tasks").json()["tasks"] == []
    _, ben = board[2]["ben"]
    assert ben.get("/users/me/available-tasks").json()["tasks"][0]["decline_count"] == 1

    undone = anna.delete(task_url(board, task_id, f"responses/{anna_id}"))
    assert undone.status_code == 200
    assert undone.json()["offer"]["status"] == "open"
    assert len(anna.get("/users/me/available-tasks").json()["tasks"]) == 1


def test_undo_is_only_for_your_own_response(board):
    task_id = post_task(board).json()["task"]["id"]
    anna_id, anna = board[2]["anna"]
    _, ben = board[2]["ben"]
    anna.post(task_url(board, task_id, "decline"))
    assert ben.delete(task_url(board, task_id, f"responses/{anna_id}")).status_code == 403


def test_undo_after_someone_accepted_is_rejected(board):
    task_id = post_task(board).json()["task"]["id"]
    anna_id, anna = board[2]["anna"]
    _, ben = board[2]["ben"]
    anna.post(task_url(board, task_id, "decline"))
    ben.post(task_url(board, task_id, "accept"))

    resp = anna.delete(task_url(board, task_id, f"responses/{anna_id}"))

    assert resp.status_code == 409
    assert resp.json()["detail"]["reason"] == "already_claimed_by_other"


def test_non_candidate_cannot_respond(board):
    task_id = post_task(board, names=("anna", "ben")).json()["task"]["id"]
    _, cleo = board[2]["cleo"]
    resp = cleo.post(task_url(board, task_id, "accept"))
    assert resp.status_code == 403
    assert resp.json()["detail"]["reason"] == "not_eligible"
    assert cleo.post(task_url(board, 999, "accept")).status_code == 404


def test_failed_tasks_lists_tasks_everyone_declined(board):
    parent, household_id, kids = board
    task_id = post_task(board).json()["task"]["id"]
    other_id = post_task(board).json()["task"]["id"]
    for _, kid in kids.values():
        kid.post(task_url(board, task_id, "decline"))
    kids["anna"][1].post(task_url(board, other_id, "decline"))

    failed = parent.get(f"/households/{household_id}/single-tasks/failed").json()["tasks"]

    assert [task["id"] for task in failed] == [task_id]
    assert failed[0]["decline_count"] == 3


def test_expired_tasks_after_deadline(board, clock, session: Session):
    parent, household_id, kids = board
    task_id = post_task(board, deadline=DEADLINE).json()["task"]["id"]
    claimed_id = post_task(board, deadline=DEADLINE).json()["task"]["id"]
    kids["cleo"][1].post(task_url(board, claimed_id, "accept"))
    clock.advance(days=2)

    expired = parent.get(f"/households/{household_id}/single-tasks/expired").json()["tasks"]
    assert [task["id"] for task in expired] == [task_id]

    resp = kids["anna"][1].post(task_url(board, task_id, "accept"))
    assert resp.status_code == 400
    assert resp.json()["detail"]["reason"] == "expired"
    row = session.exec(
        select(ClaimableResource).where(
            ClaimableResource.scope_id == task_id,
            ClaimableResource.subject_key == str(kids["anna"][0]),
        )
    ).one()
    assert row.state == ClaimState.expired


def test_parent_withdraws_a_candidate(board):
    parent, _, kids = board
    task_id = post_task(board).json()["task"]["id"]
    anna_id, anna = kids["anna"]
    ben_id, ben = kids["ben"]

    denied = ben.delete(task_url(board, task_id, f"candidates/{anna_id}"))
    assert denied.status_code == 403
    assert parent.delete(task_url(board, task_id, f"candidates/{anna_id}")).status_code == 204

    resp = anna.post(task_url(board, task_id, "accept"))
    assert resp.status_code == 400
    assert resp.json()["detail"]["state"] == "cancelled"
    accepted = ben.post(task_url(board, task_id, "accept"))
    assert accepted.json()["siblings_released"] == 1


def test_maintenance_sweep_requires_admin(board, clock):
    parent, _, kids = board
    post_task(board, deadline=DEADLINE)
    clock.advance(days=2)

    assert kids["anna"][1].post("/maintenance/expire").status_code == 403
    assert parent.post("/maintenance/expire").json() == {"expired": 3}
    assert parent.post("/maintenance/expire").json() == {"expired": 0}
