"""
Property resolution tests - id, code and fuzzy address lookups against SQLite.
"""
import uuid

from src.models.property import Property
from src.services.properties import (
    format_address,
    get_property,
    list_available_properties,
    resolve_property,
    search_by_address,
)


class TestResolveProperty:
    async def test_by_id(self, db, catalog):
        prop = catalog["IMV-003"]
        result = await resolve_property(db, property_id=str(prop.id))
        assert result.kind == "resolved"
        assert result.property_id == str(prop.id)

    async def test_id_wins_over_code(self, db, catalog):
        result = await resolve_property(db, property_id=str(catalog["IMV-003"].id), code="IMV-001")
        assert result.property_id == str(catalog["IMV-003"].id)

    async def test_malformed_id_falls_through_to_code(self, db, catalog):
        result = await resolve_property(db, property_id="not-a-uuid", code="imv-002")
        assert result.property_id == str(catalog["IMV-002"].id)

    async def test_by_code_case_insensitive(self, db, catalog):
        result = await resolve_property(db, code=" imv-001 ")
        assert result.kind == "resolved"
        assert result.property_id == str(catalog["IMV-001"].id)

    async def test_single_address_match(self, db, catalog):
        result = await resolve_property(db, address="vila mariana")
        assert result.kind == "resolved"
        assert result.property_id == str(catalog["IMV-003"].id)

    async def test_ambiguous_address_is_never_narrowed(self, db, catalog):
        result = await resolve_property(db, address="Rua das Flores")
        assert result.kind == "ambiguous"
        assert result.property_id is None
        assert [c.code for c in result.candidates] == ["IMV-001", "IMV-002"]
        assert result.candidates[0].address == "Rua das Flores 120, Centro - São Paulo/SP"

    async def test_nothing_matches(self, db, catalog):
        result = await resolve_property(db, code="IMV-999", address="Moema")
        assert result.kind == "none"

    async def test_no_reference(self, db, catalog):
        assert (await resolve_property(db)).kind == "none"

    async def test_unavailable_property_not_resolved(self, db, catalog):
        catalog["IMV-003"].status = "sold"
        await db.commit()
        assert (await resolve_property(db, code="IMV-003")).kind == "none"
        assert (await resolve_property(db, property_id=str(catalog["IMV-003"].id))).kind == "none"


class TestSearchByAddress:
    async def test_wildcards_match_literally(self, db, catalog):
        assert await search_by_address(db, "%") == []
        assert await search_by_address(db, "_") == []

    async def test_blank_query(self, db, catalog):
        assert await search_by_address(db, "   ") == []

    async def test_capped_at_three(self, db, catalog):
        for i in range(4, 8):
            db.add(Property(
                id=uuid.uuid4(), code=f"IMV-00{i}", title="Studio",
                address_neighborhood="Centro", address_city="São Paulo",
            ))
        await db.commit()
        rows = await search_by_address(db, "Centro")
        assert len(rows) == 3
        assert [r.code for r in rows] == ["IMV-001", "IMV-002", "IMV-004"]

    async def test_matches_title(self, db, catalog):
        rows = await search_by_address(db, "cobertura")
        assert [r.code for r in rows] == ["IMV-002"]


class TestHelpers:
    async def test_get_property_any_status(self, db, catalog):
        catalog["IMV-001"].status = "rented"
        await db.commit()
        prop = await get_property(db, str(catalog["IMV-001"].id))
        assert prop.code == "IMV-001"

    async def test_get_property_bad_id(self, db):
        assert await get_property(db, "xyz") is None
        assert await get_property(db, None) is None

    async def test_list_available_featured_first(self, db, catalog):
        catalog["IMV-003"].is_featured = True
        catalog["IMV-002"].status = "reserved"
        await db.commit()
        rows = await list_available_properties(db)
        assert rows[0].code == "IMV-003"
        assert "IMV-002" not in [r.code for r in rows]

    def test_format_address_without_street(self):
        prop = Property(
            code="IMV-010", title="Terreno", address_neighborhood="Centro",
            address_city="Campinas", address_state="SP",
        )
        assert format_address(prop) == "Centro - Campinas/SP"
