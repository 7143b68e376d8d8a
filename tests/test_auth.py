from sqlmodel import Session, select

from chorehub.auth import hash_password, verify_password
from chorehub.models import HouseholdMember, MemberRole, User


def register(client, email="alice@example.com", household_name="Home", password="pw"):
    data = {"display_name": email.split("@")[0].title(), "email": email, "password": password}
    if household_name:
        data["household_name"] = household_name
    return client.post("/register", data=data)


def test_password_hashing_roundtrip():
    password = "secret123"
    hashed = hash_password(password)
    assert hashed != password
    assert verify_password(password, hashed)
    assert not verify_password("wrong", hashed)


def test_register_creates_household_with_admin(client, session: Session):
    resp = register(client)
    assert resp.status_code == 201
    body = resp.json()
    assert body["user"]["email"] == "alice@example.com"
    assert body["household"]["name"] == "Home"

    member = session.exec(select(HouseholdMember)).one()
    assert member.role == MemberRole.admin
    assert member.household_id == body["household"]["id"]

    me = client.get("/me").json()
    assert me["households"] == [{"id": body["household"]["id"], "name": "Home", "role": "admin"}]


def test_register_normalizes_and_rejects_duplicate_email(client, session: Session):
    assert register(client, email="  Bob@Example.com ").status_code == 201
    assert session.exec(select(User)).one().email == "bob@example.com"
    assert register(client, email="bob@example.com").status_code == 409
    assert register(client, email="not-an-email").status_code == 400


def test_login_logout_and_protected_routes(client, make_client):
    register(client, household_name=None)
    assert client.post("/logout").status_code == 204
    assert client.get("/me").status_code == 401

    bad = client.post("/login", data={"email": "alice@example.com", "password": "nope"})
    assert bad.status_code == 401
    good = client.post("/login", data={"email": "ALICE@example.com", "password": "pw"})
    assert good.status_code == 200
    assert client.get("/me").json()["households"] == []

    anonymous = make_client()
    assert anonymous.get("/users/me/invitations").status_code == 401
    assert anonymous.get("/health").json() == {"status": "ok"}


def test_parents_add_children_and_list_members(client, make_client):
    home = register(client).json()["household"]
    resp = client.post(
        f"/households/{home['id']}/children",
        data={"display_name": "Kid", "email": "kid@example.com", "password": "pw"},
    )
    assert resp.status_code == 201
    assert resp.json()["role"] == "child"

    members = client.get(f"/households/{home['id']}/members").json()["members"]
    assert [(m["email"], m["role"]) for m in members] == [
        ("alice@example.com", "admin"),
        ("kid@example.com", "child"),
    ]

    kid = make_client()
    kid.post("/login", data={"email": "kid@example.com", "password": "pw"})
    denied = kid.post(
        f"/households/{home['id']}/children",
        data={"display_name": "Other", "email": "other@example.com", "password": "pw"},
    )
    assert denied.status_code == 403

    outsider = make_client()
    register(outsider, email="outsider@example.com", household_name=None)
    assert outsider.get(f"/households/{home['id']}/members").status_code == 403
