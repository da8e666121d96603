from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from app.riskdocs import create_app
from app.riskdocs.db import open_session
from app.riskdocs.models import Base, Organization, OrganizationSettings, User


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


@pytest.fixture()
def s(app):
    session = open_session(app)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def people(s):
    """Two organizations and one user per role. Org A does not require approval."""
    org = Organization(name="Acme Surveys")
    other = Organization(name="Other Co")
    s.add_all([org, other])
    s.flush()
    settings = OrganizationSettings(organization_id=org.id, approval_required=False)

    def user(email: str, role: str, org_id: int, can_edit: bool = True) -> User:
        return User(
            email=email,
            password_hash=generate_password_hash("pw"),
            is_active=True,
            organization_id=org_id,
            role=role,
            can_edit=can_edit,
        )

    admin = user("admin@example.com", "org_admin", org.id)
    surveyor = user("surveyor@example.com", "surveyor", org.id)
    viewer = user("viewer@example.com", "viewer", org.id, can_edit=False)
    outsider = user("outsider@example.com", "surveyor", other.id)
    s.add_all([settings, admin, surveyor, viewer, outsider])
    s.commit()
    return SimpleNamespace(
        org=org,
        other_org=other,
        settings=settings,
        admin=admin,
        surveyor=surveyor,
        viewer=viewer,
        outsider=outsider,
    )
