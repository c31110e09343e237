"""Тесты loguru sink для Supabase."""

from unittest.mock import MagicMock

from src.log_sink import create_supabase_sink


def _mock_supabase():
    """Мок Supabase-клиента с цепочкой table().insert().execute()."""
    db = MagicMock()
    table_mock = MagicMock()
    db.table.return_value = table_mock
    table_mock.insert.return_value = table_mock
    table_mock.execute.return_value = MagicMock(data=[])
    return db


def _make_message(level_name: str, module: str = "src.worker", text: str = "test msg", extra=None):
    """Мок сообщения loguru с record."""
    message = MagicMock()
    message.record = {
        "level": MagicMock(),
        "name": module,
        "message": text,
        "extra": extra or {},
    }
    # level.name в loguru это атрибут; MagicMock(name=...) его не выставит
    message.record["level"].name = level_name
    return message


class TestSupabaseSink:
    """create_supabase_sink."""

    def test_sink_writes_error_log(self) -> None:
        db = _mock_supabase()
        sink = create_supabase_sink(db)

        sink(_make_message("ERROR", "src.worker.loop", "Job job-1 failed permanently"))

        db.table.assert_called_with("monitor_logs")
        db.table.return_value.insert.assert_called_once_with({
            "level": "ERROR",
            "module": "src.worker.loop",
            "message": "Job job-1 failed permanently",
        })
        db.table.return_value.execute.assert_called_once()

    def test_sink_includes_bound_job_id(self) -> None:
        db = _mock_supabase()
        sink = create_supabase_sink(db)

        sink(_make_message("CRITICAL", "src.worker.loop", "persist failed", extra={"job_id": "job-7"}))

        row = db.table.return_value.insert.call_args[0][0]
        assert row["job_id"] == "job-7"
        assert row["level"] == "CRITICAL"

    def test_sink_does_not_crash_on_db_error(self) -> None:
        db = _mock_supabase()
        db.table.return_value.insert.return_value.execute.side_effect = Exception(
            "connection refused"
        )
        sink = create_supabase_sink(db)

        # не должно бросать
        sink(_make_message("ERROR", "src.main", "some error"))
