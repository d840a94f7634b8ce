import pytest
from werkzeug.security import generate_password_hash

from app.irdesk import create_app
from app.irdesk.auth import _login_attempts
from app.irdesk.db import session_scope
from app.irdesk.models import Base, User
from app.irdesk.modules.organizations.service import provision_organization
from app.irdesk.rbac import ensure_rbac

PASSWORD = "correct-horse-1"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)
    # Failed-login counters are process-wide
    _login_attempts.clear()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    with session_scope(app) as s:
        ensure_rbac(s)
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def make_user(app):
    def _make(email: str, *, name: str | None = None, system_admin: bool = False) -> int:
        with session_scope(app) as s:
            roles = ensure_rbac(s)
            u = User(email=email, name=name or email.split("@")[0], password_hash=generate_password_hash(PASSWORD), is_active=True)
            if system_admin:
                u.roles.append(roles["system_admin"])
            s.add(u)
            s.flush()
            return u.id

    return _make


@pytest.fixture()
def make_org(app, make_user):
    """Provision an organization with an owner; returns (org_id, owner_user_id)."""

    def _make(name: str = "Acme Corp", *, owner_email: str = "owner@acme.test", license_type: str = "starter"):
        owner_id = make_user(owner_email, name="Olivia Owner")
        with session_scope(app) as s:
            owner = s.get(User, owner_id)
            org = provision_organization(s, name=name, actor=None, admin_user=owner, license_type=license_type)
            return org.id, owner_id

    return _make


@pytest.fixture()
def add_member(app, make_user):
    """Create a user and attach them to an organization with ``role``."""
    from app.irdesk.modules.organizations.models import Organization
    from app.irdesk.modules.organizations.service import add_member as _add_member

    def _add(org_id: int, email: str, role: str = "member") -> int:
        user_id = make_user(email)
        with session_scope(app) as s:
            _add_member(s, s.get(Organization, org_id), s.get(User, user_id), role, actor=None, enforce_quota=False)
        return user_id

    return _add


@pytest.fixture()
def login(app):
    """Returns a fresh test client signed in as ``email`` with the CSRF header preset."""

    def _login(email: str, password: str = PASSWORD):
        c = app.test_client()
        r = c.post("/auth/login", json={"email": email, "password": password})
        assert r.status_code == 200, r.json
        c.environ_base["HTTP_X_CSRF_TOKEN"] = r.json["csrf_token"]
        return c

    return _login


@pytest.fixture()
def owner_client(make_org, login):
    org_id, _ = make_org()
    c = login("owner@acme.test")
    c.org_id = org_id
    return c


@pytest.fixture()
def pro_client(make_org, login):
    org_id, _ = make_org("Globex", owner_email="owner@globex.test", license_type="professional")
    c = login("owner@globex.test")
    c.org_id = org_id
    return c


@pytest.fixture()
def admin_client(make_user, login):
    make_user("root@irdesk.test", name="Platform Admin", system_admin=True)
    return login("root@irdesk.test")
