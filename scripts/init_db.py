import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.irdesk.models import User  # noqa: E402
from app.irdesk.modules.communications.service import seed_global_templates  # noqa: E402
from app.irdesk.modules.content.service import seed_default_content  # noqa: E402
from app.irdesk.modules.exercises.service import seed_exercises  # noqa: E402
from app.irdesk.modules.runbooks.service import seed_runbook_templates  # noqa: E402
from app.irdesk.rbac import ensure_rbac  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def seed_only(*, database_url: str | None = None) -> dict[str, int]:
    """
    Seed permissions, roles, the platform administrator and platform content.
    Idempotent; does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@irdesk.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///irdesk.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        roles = ensure_rbac(s)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, name="Platform Administrator", password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if roles["system_admin"] not in user.roles:
            user.roles.append(roles["system_admin"])
        s.flush()

        counts = dict(seed_default_content(s, user))
        counts["runbook_templates"] = seed_runbook_templates(s, user)
        counts["communication_templates"] = seed_global_templates(s, user)
        counts["exercises"] = seed_exercises(s, user)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")
    for name, n in counts.items():
        print(f"  seeded {name}: {n}")
    return counts


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
