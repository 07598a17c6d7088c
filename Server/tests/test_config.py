"""
ForgeConfig.from_env tests
"""

import pytest

from services.config import ForgeConfig


class TestFromEnv:
    """Environment parsing"""

    def test_defaults(self):
        config = ForgeConfig.from_env({})

        assert config.meshy_api_key is None
        assert not config.has_api_key
        assert config.meshy_base_url == "https://api.meshy.ai"
        assert config.poll_interval == 5.0
        assert config.poll_initial_delay == 2.0
        assert config.poll_max_attempts == 120
        assert config.rig_height_meters == 1.7
        assert config.gallery_limit == 20
        assert config.session_ttl_seconds == 3600.0
        assert config.max_sessions == 200
        assert config.proxy_user_agent == "curl/8.0.0"
        assert config.proxied_hosts == ("assets.meshy.ai",)
        assert config.port == 3000

    def test_overrides(self):
        config = ForgeConfig.from_env({
            "MESHY_API_KEY": "msy_live",
            "MESHY_BASE_URL": "https://meshy.internal/",
            "RIGFORGE_POLL_INTERVAL": "1.5",
            "RIGFORGE_POLL_MAX_ATTEMPTS": "10",
            "RIGFORGE_MAX_SESSIONS": "5",
            "RIGFORGE_ENABLE_PBR": "true",
            "RIGFORGE_PROXIED_HOSTS": "Assets.Meshy.AI, cdn.example.com ,",
            "RIGFORGE_LOG_LEVEL": "debug",
        })

        assert config.has_api_key
        assert config.meshy_base_url == "https://meshy.internal"
        assert config.poll_interval == 1.5
        assert config.poll_max_attempts == 10
        assert config.max_sessions == 5
        assert config.enable_pbr is True
        assert config.proxied_hosts == ("assets.meshy.ai", "cdn.example.com")
        assert config.log_level == "DEBUG"

    def test_vite_key_fallback(self):
        config = ForgeConfig.from_env({"VITE_MESHY_API_KEY": "msy_vite"})

        assert config.meshy_api_key == "msy_vite"

    def test_blank_values_use_defaults(self):
        config = ForgeConfig.from_env({"RIGFORGE_PORT": "  ", "MESHY_API_KEY": ""})

        assert config.port == 3000
        assert config.meshy_api_key is None

    @pytest.mark.parametrize("name,value", [
        ("RIGFORGE_POLL_INTERVAL", "fast"),
        ("RIGFORGE_POLL_MAX_ATTEMPTS", "1.5"),
        ("RIGFORGE_PORT", "http"),
    ])
    def test_invalid_numbers_name_the_variable(self, name, value):
        with pytest.raises(ValueError, match=name):
            ForgeConfig.from_env({name: value})
