import pytest

from agent_orchestrator.log_parser import LogLevel, detect_log_level, parse_log_line


class TestDetectLogLevel:
    @pytest.mark.parametrize(
        "message,level",
        [
            ("Error: connection refused", LogLevel.ERROR),
            ("FATAL crash", LogLevel.ERROR),
            ("Test failed", LogLevel.ERROR),
            ("Unhandled exception in thread", LogLevel.ERROR),
            ("WARNING: disk almost full", LogLevel.WARN),
            ("this API is deprecated", LogLevel.WARN),
            ("DEBUG cache miss", LogLevel.DEBUG),
            ("trace id=1", LogLevel.DEBUG),
            ("Server listening on :8080", LogLevel.INFO),
        ],
    )
    def test_keyword_levels(self, message, level):
        assert detect_log_level(message) == level

    def test_error_beats_warn(self):
        assert detect_log_level("warning: error while loading") == LogLevel.ERROR


class TestParseLogLine:
    def test_blank_line(self):
        assert parse_log_line("   ", has_timestamps=True) is None

    def test_extracts_docker_timestamp(self):
        entry = parse_log_line("2025-12-26T10:30:45.123456789Z  Server started", has_timestamps=True)

        assert entry.timestamp == "2025-12-26T10:30:45.123456789Z"
        assert entry.message == "Server started"
        assert entry.level == LogLevel.INFO

    def test_line_without_timestamp_gets_current_time(self):
        entry = parse_log_line("plain line", has_timestamps=True)

        assert entry.message == "plain line"
        assert entry.timestamp.endswith("Z")

    def test_timestamps_disabled_keeps_whole_line(self):
        entry = parse_log_line("2025-12-26T10:30:45Z hello", has_timestamps=False)

        assert entry.message == "2025-12-26T10:30:45Z hello"
