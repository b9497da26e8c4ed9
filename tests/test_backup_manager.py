import gzip
import os

import pytest

from mysql_sync.backup_manager import export_dump
from mysql_sync.errors import ExportFailedError, ImportFailedError, SyncCancelledError
from mysql_sync.restore_manager import import_dump
from mysql_sync.source import SourceEndpoint
from mysql_sync.target import LocalTarget

from .conftest import SOURCE_HOST

TIMESTAMP = "20240501_100000"


@pytest.fixture
def backup_dir(tmp_path):
    path = tmp_path / "backups"
    path.mkdir()
    return path


def test_export_single_database(world, runner, make_config, backup_dir):
    world.source = {"shop": "orders-v1"}
    config = make_config(SOURCE_DB="shop", MYSQL_DATABASE="shop")
    endpoint = SourceEndpoint(config.source, SOURCE_HOST, 3306)

    artifact = export_dump(runner, endpoint, str(backup_dir), TIMESTAMP)

    assert os.path.basename(artifact.path) == "dump_20240501_100000.sql.gz"
    assert os.listdir(backup_dir) == ["dump_20240501_100000.sql.gz"]
    assert artifact.size_bytes == os.path.getsize(artifact.path)
    assert len(artifact.checksum) == 64
    with gzip.open(artifact.path, "rt") as f:
        assert f.read() == "-- DATA orders-v1\n"


def test_export_all_databases(world, runner, make_config, backup_dir):
    world.source = {"shop": "v1", "shop_archive": "v1"}
    endpoint = SourceEndpoint(make_config().source, SOURCE_HOST, 3306)

    artifact = export_dump(runner, endpoint, str(backup_dir), TIMESTAMP, databases=["shop", "shop_archive"])

    assert os.path.basename(artifact.path) == "dump_all_20240501_100000.sql.gz"
    with gzip.open(artifact.path, "rt") as f:
        content = f.read()
    assert "USE `shop`;" in content
    assert "USE `shop_archive`;" in content


def test_failed_export_leaves_no_file(world, runner, make_config, backup_dir):
    world.source = {"shop": "v1"}
    world.failures["mysqldump"] = (2, b"mysqldump: Got error: 1045: Access denied for user 'reader'")
    endpoint = SourceEndpoint(make_config().source, SOURCE_HOST, 3306)

    with pytest.raises(ExportFailedError) as exc_info:
        export_dump(runner, endpoint, str(backup_dir), TIMESTAMP, databases=["shop"])

    assert "exit code 2" in str(exc_info.value)
    assert "Authentication Error" in str(exc_info.value)
    assert os.listdir(backup_dir) == []


def test_empty_dump_is_rejected(world, runner, make_config, backup_dir, monkeypatch):
    endpoint = SourceEndpoint(make_config().source, SOURCE_HOST, 3306)
    monkeypatch.setattr(runner, "_dump", lambda args: b"")

    with pytest.raises(ExportFailedError, match="no output"):
        export_dump(runner, endpoint, str(backup_dir), TIMESTAMP, databases=["shop"])

    assert os.listdir(backup_dir) == []


def test_cancelled_export_keeps_partial_file(world, runner, make_config, backup_dir):
    runner.cancel_on = "mysqldump"
    endpoint = SourceEndpoint(make_config().source, SOURCE_HOST, 3306)

    with pytest.raises(SyncCancelledError):
        export_dump(runner, endpoint, str(backup_dir), TIMESTAMP, databases=["shop"])

    assert os.listdir(backup_dir) == ["dump_all_20240501_100000.sql.gz.part"]


def test_export_terminated_from_another_thread_keeps_partial_file(world, runner, make_config, backup_dir):
    world.source = {"shop": "orders"}
    runner.terminate_during = "mysqldump"
    endpoint = SourceEndpoint(make_config().source, SOURCE_HOST, 3306)

    with pytest.raises(SyncCancelledError):
        export_dump(runner, endpoint, str(backup_dir), TIMESTAMP, databases=["shop"])

    assert os.listdir(backup_dir) == ["dump_all_20240501_100000.sql.gz.part"]


def test_import_terminated_from_another_thread_is_a_cancellation(world, runner, make_config, backup_dir):
    artifact = backup_dir / "dump_all_20240501_100000.sql.gz"
    artifact.write_bytes(gzip.compress(b"USE `shop`;\n-- DATA v1\n"))
    runner.terminate_during = "gunzip"
    target = LocalTarget(make_config().target)

    with pytest.raises(SyncCancelledError, match="partially loaded"):
        import_dump(runner, target, str(artifact))

    assert artifact.exists()


def test_import_dump_into_named_database(world, runner, make_config, backup_dir):
    artifact = backup_dir / "dump_20240501_100000.sql.gz"
    artifact.write_bytes(gzip.compress(b"-- DATA orders-v2\n"))
    target = LocalTarget(make_config().target)

    import_dump(runner, target, str(artifact), database="shop_replica")

    assert world.target == {"shop_replica": "orders-v2"}
    consumer = runner.commands[-1]
    assert consumer.args[-1] == "shop_replica"


def test_failed_import_keeps_artifact(world, runner, make_config, backup_dir):
    artifact = backup_dir / "dump_all_20240501_100000.sql.gz"
    artifact.write_bytes(gzip.compress(b"USE `shop`;\n-- DATA v1\n"))
    world.failures["mysql"] = (1, b"ERROR 1064 (42000) at line 1: You have an error in your SQL syntax")
    target = LocalTarget(make_config().target)

    with pytest.raises(ImportFailedError) as exc_info:
        import_dump(runner, target, str(artifact))

    assert str(artifact) in str(exc_info.value)
    assert "Import Error" in str(exc_info.value)
    assert artifact.exists()


def test_corrupt_archive(world, runner, make_config, backup_dir):
    artifact = backup_dir / "dump_all_20240501_100000.sql.gz"
    artifact.write_bytes(b"not gzip at all")
    target = LocalTarget(make_config().target)

    with pytest.raises(ImportFailedError, match="gunzip failed"):
        import_dump(runner, target, str(artifact))
