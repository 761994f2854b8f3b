import asyncio

import pytest

from repoinsight.errors import StorageError
from repoinsight.models import AnalysisResult, RepositoryMetadata
from repoinsight.orchestrator import build_basic_result
from repoinsight.storage import ResultStorage


def full_result(url: str, maintainability: int = 80) -> AnalysisResult:
    basic = build_basic_result(url, "full", RepositoryMetadata(owner="acme", name=url.rsplit("/", 1)[-1]))
    data = basic.model_dump()
    data.update(
        status="completed",
        insights={"architecture": "layered"},
        codeQuality={"maintainability": maintainability},
    )
    return AnalysisResult.model_validate(data)


def test_save_is_an_upsert_by_reference(tmp_path):
    storage = ResultStorage(f"sqlite:///{tmp_path / 'db' / 'results.db'}")
    url = "https://github.com/acme/widgets"

    async def scenario():
        first = await storage.save(build_basic_result(url, "full", RepositoryMetadata(owner="acme", name="widgets")))
        second = await storage.save(full_result(url))
        return first, second, await storage.get_by_reference(url), await storage.list_results()

    first, second, fetched, listed = asyncio.run(scenario())

    assert first.id == second.id
    assert first.status == "degraded"
    assert fetched.status == "completed"
    assert fetched.insights == {"architecture": "layered"}
    assert fetched.codeQuality.maintainability == 80
    assert len(listed) == 1
    storage.close()


def test_lookup_by_id_and_not_found(tmp_path):
    storage = ResultStorage(f"sqlite:///{tmp_path / 'results.db'}")

    async def scenario():
        saved = await storage.save(full_result("https://github.com/acme/a"))
        return (
            await storage.get_by_id(saved.id),
            await storage.get_by_id(saved.id + 100),
            await storage.get_by_reference("https://github.com/acme/missing"),
        )

    by_id, missing_id, missing_ref = asyncio.run(scenario())
    assert by_id.repositoryUrl == "https://github.com/acme/a"
    assert missing_id is None
    assert missing_ref is None


def test_list_results_newest_first(tmp_path):
    storage = ResultStorage(f"sqlite:///{tmp_path / 'results.db'}")

    async def scenario():
        for name in ("a", "b", "c"):
            await storage.save(full_result(f"https://github.com/acme/{name}"))
        await storage.save(full_result("https://github.com/acme/a", maintainability=10))
        return await storage.list_results(limit=2)

    listed = asyncio.run(scenario())
    assert [r.repositoryUrl for r in listed] == [
        "https://github.com/acme/a",
        "https://github.com/acme/c",
    ]


def test_database_errors_are_storage_errors(tmp_path):
    storage = ResultStorage(f"sqlite:///{tmp_path / 'results.db'}")
    storage.engine.dispose()
    (tmp_path / "results.db").unlink()
    (tmp_path / "results.db").mkdir()

    with pytest.raises(StorageError):
        asyncio.run(storage.get_by_reference("https://github.com/acme/widgets"))
