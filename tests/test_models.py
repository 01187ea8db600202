"""Tests for data models"""

import pytest
from mcp import types

from mcp_stdio_proxy.errors import ConfigError
from mcp_stdio_proxy.models import BackendConfig, Capability, ProxyConfig, Session

from conftest import FakeClock


class TestCapability:
    """Tests for capability discovery"""

    def test_all_capabilities(self):
        caps = types.ServerCapabilities(
            tools=types.ToolsCapability(),
            resources=types.ResourcesCapability(),
            prompts=types.PromptsCapability(),
        )

        found = Capability.from_server_capabilities(caps)

        assert found == {Capability.TOOLS, Capability.RESOURCES, Capability.PROMPTS}

    def test_only_present_categories(self):
        caps = types.ServerCapabilities(prompts=types.PromptsCapability())

        assert Capability.from_server_capabilities(caps) == {Capability.PROMPTS}

    def test_no_capabilities(self):
        assert Capability.from_server_capabilities(None) == frozenset()
        assert Capability.from_server_capabilities(types.ServerCapabilities()) == frozenset()


class TestSession:
    """Tests for Session dataclass"""

    def _session(self, clock):
        return Session(
            session_id="abc",
            backend_name="echo",
            server=None,
            transport=None,
            last_activity=clock(),
            clock=clock,
        )

    def test_touch_updates_last_activity(self):
        clock = FakeClock()
        session = self._session(clock)

        clock.advance(5)
        assert session.idle_for() == 5

        session.touch()

        assert session.last_activity == clock.now
        assert session.idle_for() == 0

    def test_idle_for_never_negative(self):
        clock = FakeClock()
        session = self._session(clock)

        assert session.idle_for(now=clock.now - 10) == 0

    def test_to_dict(self):
        session = self._session(FakeClock())

        data = session.to_dict()

        assert data["session_id"] == "abc"
        assert data["backend"] == "echo"
        assert data["in_flight"] == 0
        assert "created_at" in data


class TestBackendConfig:
    """Tests for BackendConfig"""

    def test_defaults(self):
        config = BackendConfig(name="echo", command="echo-server")

        assert config.args == []
        assert config.env is None

    def test_immutable(self):
        config = BackendConfig(name="echo", command="echo-server")

        with pytest.raises(Exception):
            config.name = "other"


class TestProxyConfig:
    """Tests for ProxyConfig validation"""

    def test_default_config_valid(self):
        config = ProxyConfig()
        config.validate()

    @pytest.mark.parametrize("port", [0, 65536, "9802", True])
    def test_invalid_port(self, port):
        config = ProxyConfig(port=port)

        with pytest.raises(ConfigError):
            config.validate()

    @pytest.mark.parametrize("field", ["idle_timeout", "sweep_interval", "startup_timeout"])
    def test_non_positive_durations(self, field):
        config = ProxyConfig()
        setattr(config, field, 0)

        with pytest.raises(ConfigError, match=field):
            config.validate()

    def test_server_name_with_slash_rejected(self):
        config = ProxyConfig(servers={"a/b": BackendConfig(name="a/b", command="x")})

        with pytest.raises(ConfigError):
            config.validate()
