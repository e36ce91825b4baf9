"""配置与重试工具单元测试

测试内容：
1. 环境变量覆盖与非法值回退
2. 队列并发配置解析
3. 封顶指数退避与进程内重试
4. 日志配置取自 TaskhiveConfig
"""

import logging

import pytest
import structlog
from taskhive.config import TaskhiveConfig, load_config, parse_queue_limits
from taskhive.exceptions import TransientError, describe_error
from taskhive.logging_config import setup_logging
from taskhive.retry import compute_backoff, is_transient, with_retries


class TestLoadConfig:
    """环境变量加载测试"""

    def test_defaults(self, monkeypatch):
        for var in (
            "TASKHIVE_DISPATCH_MAX_ATTEMPTS",
            "TASKHIVE_LEASE_TTL_S",
            "TASKHIVE_QUEUE_LIMITS",
            "TASKHIVE_DEFAULT_CONCURRENCY",
            "TASKHIVE_LEGACY_EVENTS",
        ):
            monkeypatch.delenv(var, raising=False)
        config = load_config()
        assert config.dispatch_max_attempts == 5
        assert config.lease_ttl_s == 1800
        assert config.legacy_events is True
        assert config.limit_for("agents") == 1

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TASKHIVE_DB_PATH", str(tmp_path / "x.db"))
        monkeypatch.setenv("TASKHIVE_DISPATCH_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("TASKHIVE_DISPATCH_BACKOFF_S", "0.5")
        monkeypatch.setenv("TASKHIVE_QUEUE_LIMITS", "research=3, coding=2")
        monkeypatch.setenv("TASKHIVE_LEGACY_EVENTS", "off")

        config = load_config()

        assert config.db_path == str(tmp_path / "x.db")
        assert config.dispatch_max_attempts == 7
        assert config.dispatch_backoff_s == 0.5
        assert config.limit_for("research") == 3
        assert config.limit_for("coding") == 2
        assert config.limit_for("other") == config.default_concurrency
        assert config.legacy_events is False

    def test_claim_timeout(self, monkeypatch):
        monkeypatch.setenv("TASKHIVE_CLAIM_TIMEOUT_S", "45")
        assert load_config().claim_timeout_s == 45.0
        with pytest.raises(ValueError):
            TaskhiveConfig(claim_timeout_s=0)

    def test_invalid_number_falls_back(self, monkeypatch):
        monkeypatch.setenv("TASKHIVE_LEASE_TTL_S", "forever")
        monkeypatch.setenv("TASKHIVE_ADMISSION_BACKOFF_S", "soon")
        config = load_config()
        assert config.lease_ttl_s == 1800
        assert config.admission_backoff_s == 5.0

    def test_parse_queue_limits_skips_bad_entries(self):
        assert parse_queue_limits("a=2,b,c=x,d=0,,e=1") == {"a": 2, "e": 1}

    def test_model_validation(self):
        with pytest.raises(ValueError):
            TaskhiveConfig(dispatch_max_attempts=0)


class TestBackoff:
    """退避计算测试"""

    def test_exponential_without_jitter(self):
        delays = [compute_backoff(n, 1.0, 300.0, jitter=False) for n in range(1, 6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_capped(self):
        assert compute_backoff(20, 1.0, 30.0) == 30.0

    def test_jitter_bounds(self):
        for _ in range(50):
            delay = compute_backoff(3, 1.0, 300.0)
            assert 4.0 <= delay <= 4.4

    def test_zero_base(self):
        assert compute_backoff(4, 0.0, 10.0) == 0.0


class TestWithRetries:
    """进程内重试测试"""

    async def test_succeeds_after_transient_failures(self):
        calls = []
        delays = []

        async def operation():
            calls.append(1)
            if len(calls) < 3:
                raise TransientError("busy")
            return "ok"

        async def fake_sleep(delay):
            delays.append(delay)

        result = await with_retries(operation, max_attempts=5, base_delay_s=1.0, sleep=fake_sleep)

        assert result == "ok"
        assert len(calls) == 3
        assert len(delays) == 2
        assert delays[1] > delays[0]

    async def test_exhausted_raises_last_error(self):
        async def operation():
            raise TimeoutError("slow")

        async def fake_sleep(delay):
            return None

        with pytest.raises(TimeoutError):
            await with_retries(operation, max_attempts=3, sleep=fake_sleep)

    async def test_non_transient_not_retried(self):
        calls = []

        async def operation():
            calls.append(1)
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await with_retries(operation, max_attempts=5)
        assert len(calls) == 1

    def test_is_transient(self):
        assert is_transient(TransientError("x"))
        assert is_transient(ConnectionError())
        assert not is_transient(ValueError())


class TestDescribeError:
    def test_with_message(self):
        assert describe_error(ValueError("boom")) == "ValueError: boom"

    def test_without_message(self):
        assert describe_error(KeyError()) == "KeyError"


class TestSetupLogging:
    """日志配置测试"""

    @pytest.fixture(autouse=True)
    def _restore_logging(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)
        structlog.reset_defaults()

    def test_uses_config_level_and_format(self):
        setup_logging(TaskhiveConfig(log_format="json", log_level="warning"))

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1
        formatter = root.handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_defaults_loaded_from_env(self, monkeypatch):
        monkeypatch.setenv("TASKHIVE_LOG_LEVEL", "DEBUG")
        monkeypatch.delenv("TASKHIVE_LOG_FORMAT", raising=False)

        setup_logging()

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        formatter = root.handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)
