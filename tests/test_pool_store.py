# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Tests for pool persistence and the small JSON utilities.
"""

import json
import logging

import pytest

from rotator_gateway.credential_pool import CredentialPool
from rotator_gateway.pool_store import InMemoryPoolStore, JsonFilePoolStore, PoolStore
from rotator_gateway.utils.json_extract import extract_first_json_object, strip_code_fences
from rotator_gateway.utils.resilient_io import safe_read_json, safe_write_json


class TestJsonFilePoolStore:
    @pytest.mark.asyncio
    async def test_missing_file_loads_none(self, tmp_path):
        store = JsonFilePoolStore(tmp_path / "pool.json")

        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_save_then_load(self, tmp_path):
        path = tmp_path / "nested" / "pool.json"
        store = JsonFilePoolStore(path)
        pool = CredentialPool.empty(2)
        pool.set_secret(2, "secret-two-222")

        assert await store.save(pool.to_document()) is True
        document = await store.load()

        assert document == pool.to_document()
        assert store.get_stats()["writes"] == 1
        assert [p.name for p in path.parent.iterdir()] == ["pool.json"]

    @pytest.mark.asyncio
    async def test_non_object_document_ignored(self, tmp_path):
        path = tmp_path / "pool.json"
        path.write_text("[1, 2, 3]", encoding="utf-8")

        assert await JsonFilePoolStore(path).load() is None

    @pytest.mark.asyncio
    async def test_corrupt_file_ignored(self, tmp_path):
        path = tmp_path / "pool.json"
        path.write_text("{not json", encoding="utf-8")

        assert await JsonFilePoolStore(path).load() is None


class TestInMemoryPoolStore:
    @pytest.mark.asyncio
    async def test_documents_are_copied(self):
        store = InMemoryPoolStore()
        document = CredentialPool.empty(1).to_document()

        await store.save(document)
        document["slots"][0]["secretValue"] = "mutated-after-save"
        loaded = await store.load()

        assert loaded["slots"][0]["secretValue"] == ""

    def test_incomplete_store_cannot_be_built(self):
        class LoadOnly(PoolStore):
            async def load(self):
                return None

        with pytest.raises(TypeError):
            LoadOnly()


class TestResilientIO:
    def test_unserializable_data_reports_failure(self, tmp_path):
        logger = logging.getLogger("test")

        assert safe_write_json(tmp_path / "x.json", {"bad": object()}, logger) is False
        assert not (tmp_path / "x.json").exists()

    def test_non_atomic_write(self, tmp_path):
        logger = logging.getLogger("test")

        assert safe_write_json(tmp_path / "x.json", {"a": 1}, logger, atomic=False) is True
        assert json.loads((tmp_path / "x.json").read_text()) == {"a": 1}
        assert safe_read_json(tmp_path / "x.json", logger) == {"a": 1}


class TestJsonExtract:
    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_whole_text(self):
        assert extract_first_json_object('{"a": [1, 2]}') == {"a": [1, 2]}

    def test_object_inside_prose(self):
        text = 'Sure! Here it is: {"name": "Ada", "age": 36} Hope that helps.'

        assert extract_first_json_object(text) == {"name": "Ada", "age": 36}

    @pytest.mark.parametrize("text", ["", "no json here", "{broken: }", None])
    def test_not_extractable(self, text):
        assert extract_first_json_object(text) is None
