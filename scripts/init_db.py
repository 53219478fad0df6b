import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.docportal.constants import ROLE_GESTOR_QUALIDADE, SYSTEM_ROLE_SITE_ADMIN  # noqa: E402
from app.docportal.models import Company, User, UserCompany  # noqa: E402
from app.docportal.utils import slugify  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the site admin (and optionally a first company) in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    company_name = (os.environ.get("SEED_COMPANY_NAME") or "").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///docportal.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                full_name="Site Administrator",
                password_hash=generate_password_hash(admin_password),
                system_role=SYSTEM_ROLE_SITE_ADMIN,
                is_active=True,
            )
            s.add(user)
            s.flush()
        elif user.system_role != SYSTEM_ROLE_SITE_ADMIN:
            user.system_role = SYSTEM_ROLE_SITE_ADMIN

        if company_name:
            slug = slugify(os.environ.get("SEED_COMPANY_SLUG") or company_name)
            company = s.query(Company).filter(Company.slug == slug).one_or_none()
            if not company:
                company = Company(name=company_name, slug=slug, is_active=True)
                s.add(company)
                s.flush()
            if not any(m.company_id == company.id for m in user.memberships):
                user.memberships.append(
                    UserCompany(company_id=company.id, role=ROLE_GESTOR_QUALIDADE, is_default=True)
                )

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")
    if company_name:
        print(f"Company: {company_name}")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
