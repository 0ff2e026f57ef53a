"""Tests for reference-image entity resolution."""

import pytest

from magpie.entities import MAX_REFERENCE_IMAGES_PER_ENTITY, EntityResolver


@pytest.fixture
def entities_root(tmp_path):
    dave = tmp_path / "dave"
    dave.mkdir()
    for i in range(5):
        (dave / f"{i}.png").write_bytes(b"PNG" + bytes([i]))
    (dave / "aliases.yaml").write_text("- davey\n- the baker\n", encoding="utf-8")
    (dave / "notes.txt").write_text("ignored", encoding="utf-8")
    empty = tmp_path / "ghost"
    empty.mkdir()
    return tmp_path


class TestMatching:
    def test_lists_directories(self, entities_root):
        assert EntityResolver(entities_root).list_entities() == ["dave", "ghost"]

    def test_missing_root(self, tmp_path):
        assert EntityResolver(tmp_path / "nope").list_entities() == []

    def test_fuzzy_name_match(self, entities_root):
        assert "dave" in EntityResolver(entities_root).match("a portrait of daves cat")

    def test_alias_match(self, entities_root):
        assert "dave" in EntityResolver(entities_root).match("davey riding a horse")

    def test_unrelated_prompt(self, entities_root):
        assert EntityResolver(entities_root).match("a lighthouse at night") == {}


class TestResolve:
    @pytest.mark.asyncio
    async def test_images_are_capped(self, entities_root):
        resolution = await EntityResolver(entities_root).resolve("dave at the beach")
        assert [e.name for e in resolution.entities] == ["dave"]
        images = resolution.entities[0].reference_images
        assert len(images) == MAX_REFERENCE_IMAGES_PER_ENTITY
        assert {i.mime_type for i in images} == {"image/png"}

    @pytest.mark.asyncio
    async def test_entity_without_images_is_dropped(self, entities_root):
        assert await EntityResolver(entities_root).resolve("a ghost in a hallway") is None

    @pytest.mark.asyncio
    async def test_prompt_with_references(self, entities_root):
        resolution = await EntityResolver(entities_root).resolve("dave at the beach")
        text, images = EntityResolver.build_prompt_with_references(resolution)
        assert text.startswith("Reference images of dave")
        assert text.endswith("dave at the beach")
        assert len(images) == MAX_REFERENCE_IMAGES_PER_ENTITY
