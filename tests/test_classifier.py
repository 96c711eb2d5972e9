"""Tests for import classification and signal combination."""

from __future__ import annotations

from winfloor.analyzers.api_map import ApiMap
from winfloor.analyzers.apiset import ApiSetPolicy, ApiSetRule
from winfloor.analyzers.classifier import Classifier, combine_signals, top_contributors
from winfloor.core.models import BuildSignal, ImportMatch, ImportSymbol


def _named(module: str, *names: str) -> list[ImportSymbol]:
    return [ImportSymbol(module=module, name=name) for name in names]


class TestLookup:
    """Direct hits and the API-set fallback."""

    def test_direct_hit_takes_precedence(self) -> None:
        api_map = ApiMap.from_entries([
            ("api-ms-win-core-synch-l1-2-0.dll", "WaitOnAddress", 9200, "windows8.0"),
            ("kernel32.dll", "WaitOnAddress", 19041, "windows10.0.19041"),
        ])
        result = Classifier(api_map).lookup("api-ms-win-core-synch-l1-2-0.dll", "WaitOnAddress")
        assert result.build == 9200
        assert not result.is_fallback

    def test_fallback_to_default_host(self, api_map: ApiMap) -> None:
        result = Classifier(api_map).lookup("api-ms-win-core-synch-l1-2-0.dll", "WaitOnAddress")
        assert result.build == 9200
        assert result.via == "kernel32.dll"
        assert result.describe() == "windows8.0 (api-set fallback via kernel32.dll)"

    def test_first_host_wins(self) -> None:
        api_map = ApiMap.from_entries([
            ("kernelbase.dll", "Foo", 6000, "windows6.0"),
            ("kernel32.dll", "Foo", 19041, "windows10.0.19041"),
        ])
        result = Classifier(api_map).lookup("api-ms-win-core-misc-l1-1-0.dll", "Foo")
        assert result.via == "kernelbase.dll"
        assert result.build == 6000

    def test_fallback_disabled(self, api_map: ApiMap) -> None:
        classifier = Classifier(api_map, api_set_fallback=False)
        assert not classifier.lookup("api-ms-win-core-synch-l1-2-0.dll", "WaitOnAddress").found

    def test_crt_sets_never_fall_back(self) -> None:
        api_map = ApiMap.from_entries([("kernel32.dll", "malloc", 6000, "windows6.0")])
        assert not Classifier(api_map).lookup("api-ms-win-crt-heap-l1-1-0.dll", "malloc").found

    def test_custom_policy(self) -> None:
        api_map = ApiMap.from_entries([("ntdll.dll", "RtlFoo", 7600, "windows6.1")])
        policy = ApiSetPolicy(rules=(ApiSetRule(("-rtl-",), ("ntdll.dll",)),))
        result = Classifier(api_map, policy).lookup("api-ms-win-core-rtl-l1-1-0.dll", "RtlFoo")
        assert result.via == "ntdll.dll"


class TestClassify:
    """Aggregation over an import list."""

    def test_counts_and_maximum(self, api_map: ApiMap) -> None:
        imports = [
            *_named("kernel32.dll", "GetTickCount64", "Unknown"),
            ImportSymbol(module="kernel32.dll", ordinal=12),
            *_named("api-ms-win-core-synch-l1-2-0.dll", "WaitOnAddress"),
            *_named("USER32.dll", "GetDpiForWindow"),
        ]
        classification = Classifier(api_map).classify(imports)
        assert classification.import_count == 5
        assert classification.mapped_count == 3
        assert classification.fallback_count == 1
        assert classification.api_signal.build == 14393
        assert classification.api_signal.reason == (
            "user32.dll!GetDpiForWindow -> windows10.0.14393"
        )

    def test_fallback_reason(self, api_map: ApiMap) -> None:
        imports = _named("api-ms-win-core-synch-l1-2-0.dll", "WaitOnAddress")
        signal = Classifier(api_map).classify(imports).api_signal
        assert signal.reason == (
            "api-ms-win-core-synch-l1-2-0.dll!WaitOnAddress -> windows8.0"
            " (api-set fallback via kernel32.dll)"
        )

    def test_first_import_wins_ties(self, api_map: ApiMap) -> None:
        imports = _named("kernel32.dll", "CreateFile2", "WaitOnAddress")
        signal = Classifier(api_map).classify(imports).api_signal
        assert signal.reason.startswith("kernel32.dll!CreateFile2")

    def test_ordinal_only_is_zero(self, api_map: ApiMap) -> None:
        imports = [ImportSymbol(module="kernel32.dll", ordinal=n) for n in (1, 2, 3)]
        classification = Classifier(api_map).classify(imports)
        assert classification.import_count == 3
        assert classification.mapped_count == 0
        assert classification.api_signal == BuildSignal()

    def test_empty(self, api_map: ApiMap) -> None:
        classification = Classifier(api_map).classify([])
        assert classification.import_count == 0
        assert classification.api_signal.reason == "N/A"

    def test_zero_build_hits_are_mapped_but_do_not_raise(self, api_map: ApiMap) -> None:
        classification = Classifier(api_map).classify(_named("user32.dll", "MessageBoxW"))
        assert classification.mapped_count == 1
        assert classification.api_signal.build == 0

    def test_monotonic(self, api_map: ApiMap) -> None:
        base = _named("kernel32.dll", "GetTickCount64", "CreateFile2")
        classifier = Classifier(api_map)
        before = classifier.classify(base).api_signal.build
        for extra in ("Unknown", "WaitOnAddress"):
            after = classifier.classify(base + _named("kernel32.dll", extra)).api_signal.build
            assert after >= before
        after = classifier.classify(base + _named("dxcore.dll", "DXCoreCreateAdapterFactory"))
        assert after.api_signal.build == 19041

    def test_charset_variants_classify_alike(self, api_map: ApiMap) -> None:
        api_map = ApiMap.from_entries([("user32.dll", "SetWindowText", 7600, "windows6.1")])
        classifier = Classifier(api_map)
        wide = classifier.classify(_named("user32.dll", "SetWindowTextW")).api_signal.build
        ansi = classifier.classify(_named("user32.dll", "SetWindowTextA")).api_signal.build
        assert wide == ansi == 7600


class TestCombineSignals:
    def test_unknown(self) -> None:
        assert combine_signals(BuildSignal(), BuildSignal()) == (0, "UNKNOWN")

    def test_api_wins(self) -> None:
        api = BuildSignal(build=19041, reason="kernel32.dll!Foo -> windows10.0.19041")
        header = BuildSignal(build=6000, reason="6.00 operating system version -> baseline build 6000")
        assert combine_signals(api, header) == (19041, "API: kernel32.dll!Foo -> windows10.0.19041")

    def test_api_preferred_on_tie(self) -> None:
        api = BuildSignal(build=9200, reason="a")
        header = BuildSignal(build=9200, reason="h")
        assert combine_signals(api, header) == (9200, "API: a")

    def test_headers_win(self) -> None:
        header = BuildSignal(build=10240, reason="10.00 subsystem version -> baseline build 10240")
        assert combine_signals(BuildSignal(), header) == (
            10240, "HEADERS: 10.00 subsystem version -> baseline build 10240",
        )


class TestTopContributors:
    def test_sorted_limited_and_positive(self) -> None:
        matches = [
            ImportMatch(module="a.dll", symbol="A", build=6000),
            ImportMatch(module="b.dll", symbol="B", build=0),
            ImportMatch(module="c.dll", symbol="C", build=19041),
            ImportMatch(module="d.dll", symbol="D", build=6000),
        ]
        top = top_contributors(matches, 2)
        assert [m.symbol for m in top] == ["C", "A"]
        assert [m.symbol for m in top_contributors(matches, 10)] == ["C", "A", "D"]
