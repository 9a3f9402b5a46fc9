"""
Seed a demo property catalog plus staff profiles for local testing.

Idempotent: deletes the demo rows (codes IMV-9xx, demo staff emails) first,
then recreates them.

Usage:
    python scripts/seed_demo_properties.py
"""
import asyncio
import logging
import uuid

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from src.config import get_settings
from src.models.profile import Profile
from src.models.property import Property

logging.basicConfig(level=logging.INFO, format="%(levelname)s  %(message)s")
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
STAFF = [
    ("Marina Souza", "marina.demo@visitflow.dev", "broker"),
    ("Rafael Lima", "rafael.demo@visitflow.dev", "broker"),
    ("Carla Mendes", "carla.demo@visitflow.dev", "admin"),
]

PROPERTIES = [
    {
        "code": "IMV-901", "title": "Apartamento 2 quartos no Centro",
        "address_street": "Rua das Flores", "address_number": "120",
        "address_neighborhood": "Centro", "address_city": "São Paulo",
        "bedrooms": 2, "bathrooms": 1, "parking_spots": 1, "area_total": 68,
        "rent_price": 2800, "condominium_fee": 450, "transaction_type": "rent",
        "is_featured": True,
    },
    {
        "code": "IMV-902", "title": "Casa com quintal na Vila Mariana",
        "address_street": "Rua Domingos de Morais", "address_number": "1450",
        "address_neighborhood": "Vila Mariana", "address_city": "São Paulo",
        "bedrooms": 3, "bathrooms": 2, "parking_spots": 2, "area_total": 150,
        "sale_price": 980000, "property_type": "house",
    },
    {
        "code": "IMV-903", "title": "Studio mobiliado em Pinheiros",
        "address_street": "Rua dos Pinheiros", "address_number": "500",
        "address_neighborhood": "Pinheiros", "address_city": "São Paulo",
        "bedrooms": 1, "bathrooms": 1, "parking_spots": 0, "area_total": 32,
        "rent_price": 3200, "condominium_fee": 600, "transaction_type": "rent",
    },
    {
        # Same street as IMV-901 so the "which one?" flow can be exercised
        "code": "IMV-904", "title": "Cobertura duplex no Centro",
        "address_street": "Rua das Flores", "address_number": "88",
        "address_neighborhood": "Centro", "address_city": "São Paulo",
        "bedrooms": 3, "bathrooms": 3, "parking_spots": 2, "area_total": 180,
        "sale_price": 1450000,
    },
]


async def seed() -> None:
    """Seed demo staff and catalog."""
    settings = get_settings()
    engine = create_async_engine(settings.database_url, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with async_session() as session:
        await session.execute(delete(Property).where(Property.code.in_([p["code"] for p in PROPERTIES])))
        await session.execute(delete(Profile).where(Profile.email.in_([s[1] for s in STAFF])))
        await session.commit()

    async with async_session() as session:
        for full_name, email, role in STAFF:
            session.add(Profile(id=uuid.uuid4(), full_name=full_name, email=email, role=role))
        await session.flush()
        logger.info("Created %d staff profiles", len(STAFF))

        for data in PROPERTIES:
            session.add(Property(id=uuid.uuid4(), address_state="SP", status="available", **data))
        await session.flush()
        logger.info("Created %d properties", len(PROPERTIES))

        await session.commit()

    await engine.dispose()
    logger.info("Demo catalog seeded: %s", ", ".join(p["code"] for p in PROPERTIES))


if __name__ == "__main__":
    asyncio.run(seed())
