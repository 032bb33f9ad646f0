"""
Tests for the credit gate around vision inference.

Uses a real SQLite ledger and a mocked OpenAI client, so balances are
checked against what was actually committed.
"""

import asyncio
import sqlite3
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from datafromimage.config import VisionConfig
from datafromimage.errors import (
    AccountNotFound,
    InferenceFailure,
    InsufficientCredits,
    PersistenceFailure,
)
from datafromimage.extraction.gate import ExtractionGate, ImageInput, combine_texts
from datafromimage.extraction.vision import VisionService

ACCOUNT = "user-alice"


@pytest.fixture
def vision(mock_openai_client) -> VisionService:
    return VisionService(VisionConfig(api_key="sk-vision-test-key"), client=mock_openai_client)


@pytest.fixture
async def gate(database, vision) -> ExtractionGate:
    await database.ensure_account(ACCOUNT)
    return ExtractionGate(database, vision)


def _images(count: int = 1) -> list[ImageInput]:
    return [ImageInput(filename=f"scan-{i}.jpg", data="aGVsbG8=") for i in range(1, count + 1)]


def _fail_vision(mock_openai_client) -> None:
    mock_openai_client.chat.completions.create = AsyncMock(
        side_effect=openai.APIConnectionError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        )
    )


class TestCombineTexts:
    def test_labels_and_separates_blocks(self):
        assert combine_texts(["a\nb", "c"]) == "Image 1:\na\nb\n\nImage 2:\nc"

    def test_single_image(self):
        assert combine_texts(["John Smith"]) == "Image 1:\nJohn Smith"


class TestExtractionGate:
    @pytest.mark.asyncio
    async def test_success_debits_one_credit(self, gate, database):
        result = await gate.extract(ACCOUNT, _images(), "names")

        assert result.extracted_text == "Image 1:\nJohn Smith\nJane Doe"
        assert await database.get_credits(ACCOUNT) == 4

    @pytest.mark.asyncio
    async def test_batch_costs_one_credit_and_stores_each_image(self, gate, database):
        result = await gate.extract(ACCOUNT, _images(3), "names")

        assert await database.get_credits(ACCOUNT) == 4
        assert [e.filename for e in result.extractions] == ["scan-1.jpg", "scan-2.jpg", "scan-3.jpg"]
        assert await database.count_extractions(ACCOUNT) == 3
        stored = await database.list_extractions(ACCOUNT)
        assert {e.requirements for e in stored} == {"names"}
        assert result.extracted_text.count("Image ") == 3

    @pytest.mark.asyncio
    async def test_zero_balance_never_calls_model(self, gate, database, mock_openai_client):
        await database.debit_credits(ACCOUNT, 5)

        with pytest.raises(InsufficientCredits) as exc_info:
            await gate.extract(ACCOUNT, _images())

        assert exc_info.value.status_code == 402
        mock_openai_client.chat.completions.create.assert_not_called()
        assert await database.get_credits(ACCOUNT) == 0

    @pytest.mark.asyncio
    async def test_inference_failure_restores_credit(self, gate, database, mock_openai_client):
        _fail_vision(mock_openai_client)

        with pytest.raises(InferenceFailure) as exc_info:
            await gate.extract(ACCOUNT, _images())

        assert exc_info.value.context["credits_restored"] is True
        assert await database.get_credits(ACCOUNT) == 5
        assert await database.count_extractions(ACCOUNT) == 0

    @pytest.mark.asyncio
    async def test_failed_restore_still_reports_inference_failure(
        self, gate, database, mock_openai_client, monkeypatch
    ):
        _fail_vision(mock_openai_client)
        monkeypatch.setattr(
            database,
            "restore_credits",
            AsyncMock(side_effect=sqlite3.OperationalError("database is locked")),
        )

        with pytest.raises(InferenceFailure) as exc_info:
            await gate.extract(ACCOUNT, _images())

        assert exc_info.value.context["credits_restored"] is False
        assert await database.get_credits(ACCOUNT) == 4

    @pytest.mark.asyncio
    async def test_cancelled_inference_restores_credit(self, gate, database, mock_openai_client):
        mock_openai_client.chat.completions.create = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await gate.extract(ACCOUNT, _images())

        assert await database.get_credits(ACCOUNT) == 5
        assert await database.count_extractions(ACCOUNT) == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_restores_credit(self, gate, database, mock_openai_client):
        mock_openai_client.chat.completions.create = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await gate.extract(ACCOUNT, _images(2))

        assert await database.get_credits(ACCOUNT) == 5

    @pytest.mark.asyncio
    async def test_lost_race_for_last_credit(self, gate, database, mock_openai_client, monkeypatch):
        await database.debit_credits(ACCOUNT, 5)
        # Balance read happened before a concurrent request spent the credit
        monkeypatch.setattr(database, "get_credits", AsyncMock(return_value=1))

        with pytest.raises(InsufficientCredits):
            await gate.extract(ACCOUNT, _images())

        mock_openai_client.chat.completions.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_storage_failure_after_inference_keeps_debit(self, gate, database):
        database._get_connection().execute("DROP TABLE extractions")

        with pytest.raises(PersistenceFailure):
            await gate.extract(ACCOUNT, _images())

        assert await database.get_credits(ACCOUNT) == 4

    @pytest.mark.asyncio
    async def test_unknown_account(self, gate):
        with pytest.raises(AccountNotFound):
            await gate.extract("user-ghost", _images())

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, gate, database):
        with pytest.raises(ValueError):
            await gate.extract(ACCOUNT, [])

        assert await database.get_credits(ACCOUNT) == 5

    @pytest.mark.asyncio
    async def test_configurable_cost(self, database, vision):
        await database.ensure_account(ACCOUNT)
        gate = ExtractionGate(database, vision, credits_per_extraction=3)

        await gate.extract(ACCOUNT, _images())

        assert await database.get_credits(ACCOUNT) == 2
        with pytest.raises(InsufficientCredits):
            await gate.extract(ACCOUNT, _images())
