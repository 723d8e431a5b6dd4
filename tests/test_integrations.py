"""Tests for external integration connectivity helpers."""

from __future__ import annotations

import dataclasses

import pytest
import pytest_mock

from photogen.integrations import check_prompt_service, check_storage, run_all_checks


@pytest.mark.asyncio
async def test_check_prompt_service_success(settings, mocker: pytest_mock.MockerFixture) -> None:
    client_mock = mocker.patch("photogen.integrations.checks.PromptServiceClient", autospec=True)
    instance = client_mock.return_value
    instance.ping = mocker.AsyncMock(return_value=True)
    instance.close = mocker.AsyncMock(return_value=None)

    result = await check_prompt_service(dataclasses.replace(settings, prompt_service_url="https://prompts.test"))

    assert result.success
    instance.ping.assert_awaited_once()
    instance.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_check_prompt_service_failure(settings, mocker: pytest_mock.MockerFixture) -> None:
    client_mock = mocker.patch("photogen.integrations.checks.PromptServiceClient", autospec=True)
    instance = client_mock.return_value
    instance.ping = mocker.AsyncMock(return_value=False)
    instance.close = mocker.AsyncMock(return_value=None)

    result = await check_prompt_service(dataclasses.replace(settings, prompt_service_url="https://prompts.test"))

    assert not result.success
    assert "non-success" in result.message.lower()


@pytest.mark.asyncio
async def test_check_prompt_service_unconfigured(settings, mocker: pytest_mock.MockerFixture) -> None:
    client_mock = mocker.patch("photogen.integrations.checks.PromptServiceClient", autospec=True)

    result = await check_prompt_service(settings)

    assert not result.success
    assert "PROMPT_SERVICE_URL" in result.message
    client_mock.assert_not_called()


@pytest.mark.asyncio
async def test_local_storage_check_passes(settings) -> None:
    results = await run_all_checks(settings)

    storage = await check_storage(settings)
    assert storage.success
    assert storage.name == "Storage (local)"
    assert [result.name for result in results] == ["Prompt service", "Storage (local)"]
