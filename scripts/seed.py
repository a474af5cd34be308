# scripts/seed.py

import os
import sys
import argparse

from dotenv import load_dotenv
from sqlmodel import Session, select

# Ensure root path for relative imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import create_db_and_tables, create_db_engine
from core.security import hash_password
from models.models import Organization, PortalUser

# ✅ Load environment variables
load_dotenv()

DEV_TERRITORY = ["75001", "75002", "75006", "75007", "75010"]


def _ensure_portal(session: Session, portal_key: str, name: str, zip_codes, delivery_email: str) -> Organization:
    org = session.get(Organization, portal_key)
    if not org:
        org = Organization(
            portal_key=portal_key,
            name=name,
            service_areas=["Dallas, TX"],
            target_zip_codes=list(zip_codes),
            lead_delivery_emails=[delivery_email],
        )
        session.add(org)
        session.commit()
        session.refresh(org)
        print(f"✅ Created organization {name} ({portal_key})")
    return org


def _ensure_portal_user(session: Session, org: Organization, email: str, password: str, full_name: str) -> None:
    existing = session.exec(select(PortalUser).where(PortalUser.email == email)).first()
    if existing:
        return
    session.add(
        PortalUser(
            email=email,
            full_name=full_name,
            password_hash=hash_password(password),
            portal_key=org.portal_key,
            is_active=True,
        )
    )
    session.commit()
    print(f"✅ Added portal user {email}")


def seed_dev_data(engine):
    """Seed development database with a demo portal and its login."""
    print("🌱 Seeding development data...")

    with Session(engine) as session:
        org = _ensure_portal(session, "demo-roofing", "Demo Roofing Co", DEV_TERRITORY, "leads@demo-roofing.com")
        _ensure_portal_user(session, org, "owner@demo-roofing.com", "demo-password", "Demo Owner")

    print("🌱 Development data seeding complete.")


def seed_staging_data(engine):
    """Seed staging database with minimal safe data."""
    print("🌱 Seeding staging data...")

    with Session(engine) as session:
        org = _ensure_portal(session, "staging-portal", "Staging Portal", DEV_TERRITORY, "leads@staging.leadzone.io")
        password = os.getenv("STAGING_PORTAL_PASSWORD")
        if not password:
            print("⚠️ STAGING_PORTAL_PASSWORD not set — skipping staging portal user.")
        else:
            _ensure_portal_user(session, org, "staging-owner@leadzone.io", password, "Staging Owner")

    print("🌱 Staging data seeding complete.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed LeadZone database")
    parser.add_argument("--env", choices=["dev", "staging"], default="dev", help="Which environment to seed")
    args = parser.parse_args()

    engine = create_db_engine(os.getenv("DATABASE_URL"))
    create_db_and_tables(engine)

    if args.env == "dev":
        seed_dev_data(engine)
    else:
        seed_staging_data(engine)
