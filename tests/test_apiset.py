"""Tests for the API-set fallback policy."""

from __future__ import annotations

from shared.config import ApiSetConfig
from winfloor.analyzers.apiset import DEFAULT_API_SET_POLICY, ApiSetPolicy


class TestIsApiSet:
    def test_prefixes(self) -> None:
        assert DEFAULT_API_SET_POLICY.is_api_set("api-ms-win-core-synch-l1-2-0.dll")
        assert DEFAULT_API_SET_POLICY.is_api_set("EXT-MS-WIN-NTUSER-WINDOW-L1-1-0.dll")

    def test_crt_sets_excluded(self) -> None:
        assert not DEFAULT_API_SET_POLICY.is_api_set("api-ms-win-crt-runtime-l1-1-0.dll")

    def test_regular_module(self) -> None:
        assert not DEFAULT_API_SET_POLICY.is_api_set("kernel32.dll")


class TestHostsFor:
    def test_default_hosts(self) -> None:
        assert DEFAULT_API_SET_POLICY.hosts_for("api-ms-win-core-synch-l1-2-0.dll") == (
            "kernelbase.dll", "kernel32.dll",
        )

    def test_marker_rules(self) -> None:
        policy = DEFAULT_API_SET_POLICY
        assert policy.hosts_for("ext-ms-win-user-misc-l1-1-0.dll") == ("user32.dll",)
        assert policy.hosts_for("ext-ms-win-gdi-dc-l1-2-0.dll") == ("gdi32.dll",)
        assert policy.hosts_for("api-ms-win-shell-shellcom-l1-1-0.dll") == ("shell32.dll",)
        assert policy.hosts_for("api-ms-win-core-com-l1-1-0.dll") == ("combase.dll", "ole32.dll")
        assert policy.hosts_for("api-ms-win-security-base-l1-1-0.dll") == ("advapi32.dll",)
        assert policy.hosts_for("ext-ms-win-rpc-ssl-l1-1-0.dll") == ("rpcrt4.dll",)

    def test_not_an_api_set(self) -> None:
        assert DEFAULT_API_SET_POLICY.hosts_for("user32.dll") == ()
        assert DEFAULT_API_SET_POLICY.hosts_for("api-ms-win-crt-heap-l1-1-0.dll") == ()


class TestFromConfig:
    def test_empty_config_keeps_defaults(self) -> None:
        assert ApiSetPolicy.from_config(ApiSetConfig()) == DEFAULT_API_SET_POLICY

    def test_overrides(self) -> None:
        config = ApiSetConfig(
            rules={"-synch-": ["KernelBase.dll"]},
            default_hosts=["ntdll.dll"],
        )
        policy = ApiSetPolicy.from_config(config)
        assert policy.hosts_for("api-ms-win-core-synch-l1-2-0.dll") == ("kernelbase.dll",)
        assert policy.hosts_for("api-ms-win-core-file-l1-1-0.dll") == ("ntdll.dll",)
        # replaced rules no longer include the user marker
        assert policy.hosts_for("ext-ms-win-user-misc-l1-1-0.dll") == ("ntdll.dll",)
        assert policy.prefixes == DEFAULT_API_SET_POLICY.prefixes
