import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.riskdocs.constants import ROLE_PLATFORM_ADMIN
from app.riskdocs.models import Organization, OrganizationSettings, User
from scripts._db_utils import script_session


def _truthy(v: str | None) -> bool:
    return (v or "").strip().lower() in ("1", "true", "yes", "on")


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the default organization, its settings and the admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@riskdocs.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    org_name = (os.environ.get("DEFAULT_ORG_NAME") or "Default Organization").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(database_url) as s:
        org = s.query(Organization).filter(Organization.name == org_name).one_or_none()
        if not org:
            org = Organization(name=org_name)
            s.add(org)
            s.flush()

        settings = s.query(OrganizationSettings).filter(OrganizationSettings.organization_id == org.id).one_or_none()
        if not settings:
            settings = OrganizationSettings(
                organization_id=org.id,
                approval_required=_truthy(os.environ.get("DEFAULT_APPROVAL_REQUIRED")),
            )
            s.add(settings)

        admin = s.query(User).filter(User.email == admin_email).one_or_none()
        if not admin:
            admin = User(
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                is_active=True,
                organization_id=org.id,
                role=ROLE_PLATFORM_ADMIN,
                can_edit=True,
            )
            s.add(admin)
        elif admin.organization_id is None:
            admin.organization_id = org.id


def main() -> None:
    seed_only()
    print("Seed complete.")


if __name__ == "__main__":
    main()
