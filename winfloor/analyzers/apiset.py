"""
API-Set Fallback Policy
========================

API-set modules (``api-ms-win-core-synch-l1-2-0.dll``) are virtual names
the loader forwards to a concrete host DLL.  Platform metadata is keyed
by the concrete host, so an import through an API set usually misses a
direct lookup.  :class:`ApiSetPolicy` proposes plausible hosts for such
a module; the classifier retries the lookup against each.

The table is hand-curated and approximate.  Hits found through it are
reported separately from direct hits, and the whole table can be
replaced from the ``[apiset]`` configuration section.

References:
    - Microsoft. (2024). Windows API sets. Microsoft Learn.
      https://learn.microsoft.com/en-us/windows/win32/apiindex/windows-apisets
"""

from __future__ import annotations

from dataclasses import dataclass

from shared.config import ApiSetConfig


@dataclass(frozen=True)
class ApiSetRule:
    """Modules containing any of *markers* fall back to *hosts*, in order."""
    markers: tuple[str, ...]
    hosts: tuple[str, ...]

    def matches(self, module: str) -> bool:
        return any(marker in module for marker in self.markers)


_DEFAULT_RULES: tuple[ApiSetRule, ...] = (
    ApiSetRule(("-user-", "-user32-"), ("user32.dll",)),
    ApiSetRule(("-gdi-", "-gdi32-"), ("gdi32.dll",)),
    ApiSetRule(("-shell-",), ("shell32.dll",)),
    ApiSetRule(("-ole-",), ("ole32.dll", "combase.dll")),
    ApiSetRule(("-com-",), ("combase.dll", "ole32.dll")),
    ApiSetRule(("-rpc-",), ("rpcrt4.dll",)),
    ApiSetRule(("-security-", "-advapi-"), ("advapi32.dll",)),
    ApiSetRule(("-winsock-", "-ws2-"), ("ws2_32.dll",)),
)


@dataclass(frozen=True)
class ApiSetPolicy:
    """Ordered marker table mapping API-set names to candidate hosts.

    Attributes:
        prefixes: Module name prefixes that identify an API set.
        excluded_prefixes: Prefixes that never fall back (the universal
            CRT sets resolve to ``ucrtbase.dll``, which platform metadata
            does not describe).
        rules: Evaluated in order; the first matching rule wins.
        default_hosts: Hosts for API sets no rule matches.
    """

    prefixes: tuple[str, ...] = ("api-ms-win-", "ext-ms-win-")
    excluded_prefixes: tuple[str, ...] = ("api-ms-win-crt-",)
    rules: tuple[ApiSetRule, ...] = _DEFAULT_RULES
    default_hosts: tuple[str, ...] = ("kernelbase.dll", "kernel32.dll")

    def is_api_set(self, module: str) -> bool:
        name = module.strip().lower()
        if any(name.startswith(prefix) for prefix in self.excluded_prefixes):
            return False
        return any(name.startswith(prefix) for prefix in self.prefixes)

    def hosts_for(self, module: str) -> tuple[str, ...]:
        """Return the candidate hosts for *module*; empty if not an API set."""
        if not self.is_api_set(module):
            return ()
        name = module.strip().lower()
        for rule in self.rules:
            if rule.matches(name):
                return rule.hosts
        return self.default_hosts

    @classmethod
    def from_config(cls, config: ApiSetConfig) -> ApiSetPolicy:
        """Build a policy, replacing each built-in part the config sets."""
        base = cls()
        rules = base.rules
        if config.rules:
            rules = tuple(
                ApiSetRule((marker.lower(),), tuple(h.lower() for h in hosts))
                for marker, hosts in config.rules.items()
            )
        return cls(
            prefixes=tuple(p.lower() for p in config.prefixes) or base.prefixes,
            excluded_prefixes=(
                tuple(p.lower() for p in config.excluded_prefixes)
                or base.excluded_prefixes
            ),
            rules=rules,
            default_hosts=(
                tuple(h.lower() for h in config.default_hosts) or base.default_hosts
            ),
        )


DEFAULT_API_SET_POLICY = ApiSetPolicy()
