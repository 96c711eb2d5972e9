"""
Import Classifier
==================

Joins a binary's imports against an :class:`ApiMap` and reduces them to
one minimum build, remembering which import forced it.

Resolution per named import:

    1. direct lookup of the key variants (:func:`key_variants`)
    2. only on a miss, and only for API-set modules, the same lookup
       against each candidate host from the :class:`ApiSetPolicy`

Ordinal imports are counted but never looked up.  Unmatched imports
contribute nothing.  Ties on the maximum keep the first import in input
order.
"""

from __future__ import annotations

from typing import Iterable

from winfloor.analyzers.api_map import ApiMap, normalize_module
from winfloor.analyzers.apiset import DEFAULT_API_SET_POLICY, ApiSetPolicy
from winfloor.core.models import (
    UNKNOWN_REASON,
    BuildSignal,
    Classification,
    ImportMatch,
    ImportSymbol,
    LookupResult,
)


class Classifier:
    """Looks imports up in a shared, read-only :class:`ApiMap`.

    Args:
        api_map: The map to consult.  Never modified.
        policy: API-set fallback table.
        api_set_fallback: Disable to report direct hits only.
    """

    def __init__(
        self,
        api_map: ApiMap,
        policy: ApiSetPolicy = DEFAULT_API_SET_POLICY,
        *,
        api_set_fallback: bool = True,
    ) -> None:
        self._map = api_map
        self._policy = policy
        self._fallback = api_set_fallback

    @property
    def api_map(self) -> ApiMap:
        return self._map

    def lookup(self, module: str, symbol: str) -> LookupResult:
        """Resolve one ``(module, symbol)`` pair, direct hit first."""
        result = self._map.lookup(module, symbol)
        if result.found or not self._fallback:
            return result

        for host in self._policy.hosts_for(module):
            hit = self._map.lookup(host, symbol)
            if hit.found:
                return LookupResult(requirement=hit.requirement, key=hit.key, via=host)
        return result

    def classify(self, imports: Iterable[ImportSymbol]) -> Classification:
        """Aggregate *imports* into a :class:`Classification`."""
        import_count = 0
        mapped = 0
        fallback = 0
        best = BuildSignal()
        matches: list[ImportMatch] = []

        for sym in imports:
            import_count += 1
            if sym.is_ordinal:
                continue

            result = self.lookup(sym.module, sym.symbol)
            if not result.found:
                continue

            mapped += 1
            if result.is_fallback:
                fallback += 1
            match = ImportMatch(
                module=normalize_module(sym.module),
                symbol=sym.symbol,
                build=result.build,
                platform_string=result.platform_string,
                via=result.via,
            )
            matches.append(match)
            if match.build > best.build:
                best = BuildSignal(build=match.build, reason=match.reason)

        return Classification(
            import_count=import_count,
            mapped_count=mapped,
            fallback_count=fallback,
            api_signal=best,
            matches=tuple(matches),
        )


def combine_signals(api: BuildSignal, header: BuildSignal) -> tuple[int, str]:
    """Combine the API and header signals into ``(required_build, reason)``.

    The plain maximum wins.  The API signal is preferred on a tie.
    """
    required = max(api.build, header.build)
    if required == 0:
        return 0, UNKNOWN_REASON
    if api.build >= header.build:
        return required, f"API: {api.reason}"
    return required, f"HEADERS: {header.reason}"


def top_contributors(matches: Iterable[ImportMatch], limit: int) -> tuple[ImportMatch, ...]:
    """The *limit* highest-build matches, stable on input order."""
    ranked = sorted(
        (m for m in matches if m.build > 0), key=lambda m: m.build, reverse=True
    )
    return tuple(ranked[:limit])
