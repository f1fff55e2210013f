import json
import os
import sqlite3

import pytest

from certsync import utils
from certsync.errors import ConfigRecordMissing, ConfigStoreMalformed, ConfigWriteError
from certsync.stores import JsonFileStore, SqliteSettingsStore, open_store

NEW = {"certFile": "/ssl/cert.pem", "keyFile": "/ssl/key.pem"}


@pytest.fixture
def config_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"port": 2053, "certFile": "", "keyFile": ""}))
    return path


@pytest.fixture
def xui_db(tmp_path):
    path = tmp_path / "x-ui.db"
    db = sqlite3.connect(str(path))
    db.execute('CREATE TABLE settings (id INTEGER PRIMARY KEY, "key" TEXT, value TEXT)')
    db.executemany(
        'INSERT INTO settings ("key", value) VALUES (?, ?)',
        [("webCertFile", ""), ("webKeyFile", ""), ("webPort", "2053")],
    )
    db.commit()
    db.close()
    return path


def _settings(path):
    db = sqlite3.connect(str(path))
    try:
        return dict(db.execute('SELECT "key", value FROM settings').fetchall())
    finally:
        db.close()


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------


def test_json_update_keeps_other_keys(config_json):
    store = JsonFileStore(str(config_json))
    assert store.apply(NEW) is True
    data = json.loads(config_json.read_text())
    assert data == {"port": 2053, **NEW}


def test_json_noop_does_not_rewrite(config_json):
    store = JsonFileStore(str(config_json))
    store.apply(NEW)
    before = os.stat(config_json).st_ino
    assert store.apply(NEW) is False
    assert os.stat(config_json).st_ino == before


def test_json_preserves_file_mode(config_json):
    os.chmod(config_json, 0o640)
    JsonFileStore(str(config_json)).apply(NEW)
    assert os.stat(config_json).st_mode & 0o777 == 0o640


def test_json_dotted_keys(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"tls": {"certFile": "old"}}))
    JsonFileStore(str(path)).apply({"tls.certFile": "new", "tls.keyFile": "k"})
    assert json.loads(path.read_text()) == {"tls": {"certFile": "new", "keyFile": "k"}}


def test_json_missing_parent_object(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{}")
    with pytest.raises(ConfigRecordMissing):
        JsonFileStore(str(path)).apply({"tls.certFile": "x"})


def test_json_missing_file_is_record_missing(tmp_path):
    store = JsonFileStore(str(tmp_path / "absent.json"))
    with pytest.raises(ConfigRecordMissing) as info:
        store.apply(NEW)
    assert "absent.json" in str(info.value)
    assert not (tmp_path / "absent.json").exists()


@pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
def test_json_malformed(tmp_path, content):
    path = tmp_path / "config.json"
    path.write_text(content)
    with pytest.raises(ConfigStoreMalformed):
        JsonFileStore(str(path)).apply(NEW)


def test_json_crash_before_rename_leaves_old_document(config_json, monkeypatch):
    original = config_json.read_text()

    def crash(src, dst):
        raise OSError(5, "Input/output error")

    monkeypatch.setattr(utils.os, "replace", crash)
    with pytest.raises(ConfigWriteError):
        JsonFileStore(str(config_json)).apply(NEW)

    assert config_json.read_text() == original
    assert os.listdir(config_json.parent) == ["config.json"]


def test_json_crash_mid_write_leaves_old_document(config_json, monkeypatch):
    original = config_json.read_text()

    def partial_dump(obj, fh, **kwargs):
        fh.write('{"port": 20')
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(utils.json, "dump", partial_dump)
    with pytest.raises(ConfigWriteError):
        JsonFileStore(str(config_json)).apply(NEW)

    assert config_json.read_text() == original
    assert os.listdir(config_json.parent) == ["config.json"]


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------

SQL_NEW = {"webCertFile": "/data/x.crt", "webKeyFile": "/data/x.key"}


def test_sqlite_update(xui_db):
    store = SqliteSettingsStore(str(xui_db))
    assert store.apply(SQL_NEW) is True
    assert _settings(xui_db) == {**SQL_NEW, "webPort": "2053"}
    assert store.apply(SQL_NEW) is False


def test_sqlite_missing_row_rolls_back(xui_db):
    db = sqlite3.connect(str(xui_db))
    db.execute("DELETE FROM settings WHERE \"key\" = 'webKeyFile'")
    db.commit()
    db.close()

    with pytest.raises(ConfigRecordMissing) as info:
        SqliteSettingsStore(str(xui_db)).apply(SQL_NEW)
    assert "webKeyFile" in str(info.value)
    # The certificate row was updated first, then rolled back
    assert _settings(xui_db)["webCertFile"] == ""


def test_sqlite_missing_table(tmp_path):
    path = tmp_path / "empty.db"
    sqlite3.connect(str(path)).close()
    with pytest.raises(ConfigRecordMissing):
        SqliteSettingsStore(str(path)).apply(SQL_NEW)


def test_sqlite_missing_database_is_not_created(tmp_path):
    path = tmp_path / "db" / "x-ui.db"
    with pytest.raises(ConfigRecordMissing):
        SqliteSettingsStore(str(path)).apply(SQL_NEW)
    assert not path.exists()


def test_sqlite_not_a_database(tmp_path):
    path = tmp_path / "x-ui.db"
    path.write_bytes(b"this is not sqlite" * 100)
    with pytest.raises(ConfigStoreMalformed):
        SqliteSettingsStore(str(path)).apply(SQL_NEW)


def test_sqlite_locked_database_is_transient(xui_db):
    holder = sqlite3.connect(str(xui_db), isolation_level=None)
    holder.execute("BEGIN EXCLUSIVE")
    try:
        with pytest.raises(ConfigWriteError):
            SqliteSettingsStore(str(xui_db), timeout=0.05).apply(SQL_NEW)
    finally:
        holder.execute("ROLLBACK")
        holder.close()


def test_sqlite_interrupt_aborts_the_write(xui_db):
    class InterruptedStore(SqliteSettingsStore):
        def _connect(self):
            conn = super()._connect()
            conn.set_progress_handler(self._interrupt_now, 1)
            return conn

        def _interrupt_now(self):
            self.interrupt()
            return 0

    with pytest.raises(ConfigWriteError, match="interrupted"):
        InterruptedStore(str(xui_db)).apply(SQL_NEW)
    assert _settings(xui_db)["webCertFile"] == ""


def test_sqlite_interrupt_without_write_is_noop(xui_db):
    store = SqliteSettingsStore(str(xui_db))
    store.interrupt()
    assert store.apply(SQL_NEW) is True


def test_sqlite_rejects_bad_identifiers(xui_db):
    with pytest.raises(ValueError):
        SqliteSettingsStore(str(xui_db), table="settings; DROP TABLE settings")


def test_open_store(tmp_path):
    assert isinstance(open_store("json", str(tmp_path / "c.json")), JsonFileStore)
    store = open_store("sqlite", str(tmp_path / "x.db"), table="prefs")
    assert store.describe().endswith("x.db#prefs")
    with pytest.raises(ValueError):
        open_store("yaml", "x")
