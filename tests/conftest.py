"""
Shared pytest fixtures for the Contract Tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - project / other_project: Pre-created Project entities
    - users: one user per project role, keyed by role
    - milestone / second_milestone: baselined milestones of ``project``
"""

from datetime import date
from decimal import Decimal

import pytest

from tracker import create_app
from tracker.models import db as _db
from tracker.models.auth import ProjectMember, User
from tracker.models.project import Milestone, Project


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


def make_project(code="ACME", name="Acme Rollout"):
    project = Project(code=code, name=name)
    _db.session.add(project)
    _db.session.commit()
    return project


def make_user(email, full_name=None, status="active"):
    user = User(email=email, full_name=full_name or email.split("@")[0].title(), status=status)
    _db.session.add(user)
    _db.session.commit()
    return user


def make_member(project, user, role):
    member = ProjectMember(project_id=project.id, user_id=user.id, role=role)
    _db.session.add(member)
    _db.session.commit()
    return member


def make_milestone(project, ref, *, cost="1000.00", start=date(2026, 1, 1), end=date(2026, 1, 10),
                   baselined=True, **extra):
    milestone = Milestone(
        project_id=project.id,
        milestone_ref=ref,
        name=f"Milestone {ref}",
        start_date=start,
        end_date=end,
        forecast_end_date=end,
        billable=Decimal(cost) if cost is not None else None,
        forecast_billable=Decimal(cost) if cost is not None else None,
        **extra,
    )
    if baselined:
        milestone.baseline_start_date = start
        milestone.baseline_end_date = end
        milestone.baseline_billable = Decimal(cost) if cost is not None else None
    _db.session.add(milestone)
    _db.session.commit()
    return milestone


def auth_headers(user_id):
    return {"X-User-Id": str(user_id)}


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def project():
    return make_project()


@pytest.fixture()
def other_project():
    return make_project(code="GLOBEX", name="Globex Upgrade")


@pytest.fixture()
def users(project):
    """One active user per project role: admin, supplier_pm, customer_pm, viewer."""
    result = {}
    for role in ("admin", "supplier_pm", "customer_pm", "viewer"):
        user = make_user(f"{role}@example.com", full_name=role.replace("_", " ").title())
        make_member(project, user, role)
        result[role] = user
    return result


@pytest.fixture()
def milestone(project):
    return make_milestone(project, "MS-01")


@pytest.fixture()
def second_milestone(project):
    return make_milestone(
        project, "MS-02", cost="500.00", start=date(2026, 1, 11), end=date(2026, 1, 20),
    )
