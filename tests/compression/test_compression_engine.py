"""
Tests for the CompressionEngineComponent.
"""

import pytest

from elements.elements.base import BaseElement
from elements.elements.components.compression_engine_component import CompressionEngineComponent
from elements.elements.components.utils.compression_utils import (
    BundleMessage, CompressionLevel, Tier, build_threads, check_thread_integrity,
)
from host.config import CompressionConfig
from rendering.api import RenderElement, RenderElementKind, CompressionHint

from bundle_helpers import make_message

NOW = 1_000_000.0
DAY = 86400.0


@pytest.fixture
def engine():
    """
    Fixture that provides a CompressionEngineComponent counting one token per character
    (no tiktoken encoding).
    """
    owner = BaseElement(element_id="session_compress", name="Compression Owner")
    return owner.add_component(CompressionEngineComponent,
                               config=CompressionConfig(tokenizer_model=None, chars_per_token=1,
                                                        historical_key_messages=3))


def _text(element_id, size=1000, importance=0.5, timestamp=NOW, preserve=False, summary=None):
    return RenderElement(element_id=element_id, kind=RenderElementKind.TEXT, content="x" * size,
                         timestamp=timestamp,
                         hint=CompressionHint(importance=importance, preserve_verbatim=preserve,
                                              suggested_summary=summary))


def _bundle(events, age, element_id="bundle"):
    content = "\n".join(e.payload["text"] for e in events)
    return RenderElement(element_id=element_id, kind=RenderElementKind.REMOTE_BUNDLE, content=content,
                         timestamp=NOW - age, events=events)


class TestGlobalLoop:
    """Test suite for fitting elements into the budget."""

    def test_everything_fits(self, engine):
        result = engine.compress([_text("a", 100), _text("b", 100)], budget=500, now=NOW)

        assert [e.level for e in result.elements] == [CompressionLevel.VERBATIM] * 2
        assert result.total_tokens == 200
        assert result.warnings == []

    def test_least_important_compressed_first(self, engine):
        # Execute
        result = engine.compress([_text("a", importance=0.9), _text("b", importance=0.1)], budget=1500, now=NOW)

        # Verify
        assert result.get("a").level == CompressionLevel.VERBATIM
        assert result.get("b").level == CompressionLevel.CONDENSED
        assert result.get("b").content.endswith(" ... [+600 chars]")
        assert result.total_tokens == 1417
        assert result.total_tokens <= result.budget

    def test_older_compressed_first_on_ties(self, engine):
        result = engine.compress([_text("new", timestamp=NOW), _text("old", timestamp=NOW - 100)],
                                 budget=1500, now=NOW)

        assert result.get("old").level == CompressionLevel.CONDENSED
        assert result.get("new").level == CompressionLevel.VERBATIM

    def test_hints_override_element_hint(self, engine):
        hints = {"a": CompressionHint(importance=0.0)}

        result = engine.compress([_text("a", importance=0.9), _text("b", importance=0.5)], budget=1500,
                                 hints=hints, now=NOW)

        assert result.get("a").level == CompressionLevel.CONDENSED

    def test_summary_level_uses_suggested_summary(self, engine):
        result = engine.compress([_text("a", summary="short")], budget=100, now=NOW)

        element = result.get("a")
        assert element.level == CompressionLevel.SUMMARY
        assert element.content == "[summary of a] short"

    def test_budget_exceeded_is_a_warning(self, engine):
        result = engine.compress([_text("a")], budget=5, now=NOW)

        assert result.get("a").level == CompressionLevel.REFERENCE
        assert result.get("a").content == "[text a omitted]"
        assert result.budget_exceeded is True
        assert result.render() == "[text a omitted]"

    def test_preserve_verbatim_is_never_touched(self, engine):
        # Setup
        kept = _text("kept", 300, importance=0.0, preserve=True)
        other = _text("other", 300, importance=1.0)

        # Execute
        result = engine.compress([kept, other], budget=100, now=NOW)

        # Verify
        assert result.get("kept").level == CompressionLevel.VERBATIM
        assert result.get("kept").content == kept.content
        assert result.get("kept").preserved is True
        assert result.get("other").level == CompressionLevel.REFERENCE
        assert result.budget_exceeded is True

    def test_output_keeps_input_order(self, engine):
        elements = [_text("c", 10), _text("a", 10), _text("b", 10)]

        result = engine.compress(elements, budget=100, now=NOW)

        assert [e.element_id for e in result.elements] == ["c", "a", "b"]
        assert result.to_dict()["elements"][0]["level"] == "verbatim"

    def test_custom_size_estimator(self):
        owner = BaseElement(element_id="session_estimator", name="Estimator Owner")
        engine = owner.add_component(CompressionEngineComponent, size_estimator=lambda text: len(text.split()))

        result = engine.compress([RenderElement(element_id="a", kind=RenderElementKind.TEXT,
                                                content="one two three")], budget=10, now=NOW)

        assert result.total_tokens == 3


def _deploy_and_lunch():
    return [
        make_message("e1", "Should we deploy the server tonight?", 1),
        make_message("e2", "Yes, deploy the server after the backup.", 2, reply_to="e1", sender="bob"),
        make_message("e3", "Anyone up for lunch?", 3),
        make_message("e4", "Pizza for lunch sounds good.", 4, reply_to="e3", sender="bob"),
        make_message("e5", "Server deploy finished.", 5, reply_to="e2"),
        make_message("e6", "Reminder about the offsite.", 6),
    ]


def _assert_threads_intact(events, partial):
    threads = build_threads([BundleMessage.from_event(e) for e in events])
    for thread in threads:
        assert check_thread_integrity(thread, partial.kept_event_ids)
    assert partial.kept_event_ids | partial.elided_event_ids == {e.id for e in events}
    assert not partial.kept_event_ids & partial.elided_event_ids


class TestBundleTiers:
    """Test suite for thread-aware compression of remote bundles."""

    def test_recent_bundle_is_kept(self, engine):
        events = _deploy_and_lunch()

        partial = engine.compress_bundle(_bundle(events, age=60), focus_topics=["deploy"], now=NOW)

        assert partial.tier == Tier.RECENT
        assert partial.kept_event_ids == {e.id for e in events}
        assert [s["type"] for s in partial.segments] == ["message"] * 6

    def test_mid_term_keeps_relevant_threads(self, engine):
        # Setup
        events = _deploy_and_lunch()

        # Execute
        partial = engine.compress_bundle(_bundle(events, age=DAY), focus_topics=["server deploy"], now=NOW)

        # Verify
        assert partial.tier == Tier.MID_TERM
        assert partial.kept_event_ids == {"e1", "e2", "e5"}
        assert partial.elided_event_ids == {"e3", "e4", "e6"}
        _assert_threads_intact(events, partial)

    def test_mid_term_without_focus_keeps_everything(self, engine):
        events = _deploy_and_lunch()

        partial = engine.compress_bundle(_bundle(events, age=DAY), now=NOW)

        assert partial.kept_event_ids == {e.id for e in events}

    def test_mid_term_medium_keeps_first_and_last_exchange(self, engine):
        # Setup
        events = [
            make_message("m1", "we should deploy soon", 1),
            make_message("m2", "ok", 2, reply_to="m1"),
            make_message("m3", "fine", 3, reply_to="m2"),
            make_message("m4", "maybe later", 4, reply_to="m2"),
            make_message("m5", "agreed", 5, reply_to="m2"),
        ]

        # Execute
        partial = engine.compress_bundle(_bundle(events, age=DAY),
                                         focus_topics=["deploy server database cache"], now=NOW)

        # Verify
        assert partial.kept_event_ids == {"m1", "m2", "m5"}
        assert [s["type"] for s in partial.segments] == ["message", "message", "summary", "message"]
        assert partial.segments[2]["covers"] == ["m3", "m4"]
        assert partial.segments[2]["text"].startswith("[summary] 2 messages:")
        _assert_threads_intact(events, partial)

    def test_historical_keeps_few_key_messages(self, engine):
        events = _deploy_and_lunch()

        partial = engine.compress_bundle(_bundle(events, age=30 * DAY), now=NOW)

        assert partial.tier == Tier.HISTORICAL
        assert partial.kept_event_ids == {"e1", "e2", "e6"}
        assert partial.segments[0]["type"] == "summary"
        assert [s["event_id"] for s in partial.segments[1:]] == ["e1", "e2", "e6"]
        _assert_threads_intact(events, partial)

    def test_compress_applies_tiers_before_the_loop(self, engine):
        events = _deploy_and_lunch()

        result = engine.compress([_bundle(events, age=30 * DAY)], budget=10_000, now=NOW)

        element = result.get("bundle")
        assert element.tier == Tier.HISTORICAL
        assert element.level == CompressionLevel.VERBATIM
        assert element.content.startswith("[summary] 3 messages:")

    def test_preserved_bundle_is_not_tiered(self, engine):
        bundle = _bundle(_deploy_and_lunch(), age=30 * DAY)
        bundle.hint = CompressionHint(preserve_verbatim=True)

        result = engine.compress([bundle], budget=10, now=NOW)

        assert result.get("bundle").content == bundle.content
        assert result.get("bundle").tier is None

    def test_raised_bundle_never_splits_an_exchange(self, engine):
        """A request is never shown without its response at any compression level."""
        # Setup
        events = [
            make_message("q1", "Q" * 420, 1),
            make_message("r1", "ANSWER-ok", 2, reply_to="q1", sender="bob"),
        ]

        for budget in (1000, 440, 300, 20):
            # Execute
            element = engine.compress([_bundle(events, age=60)], budget=budget, now=NOW).get("bundle")

            # Verify
            if "QQQQ" in element.content:
                assert "bob: ANSWER-ok" in element.content
            assert "... [+" not in element.content

    def test_bundle_summary_level_covers_every_message(self, engine):
        events = [
            make_message("q1", "Q" * 420, 1),
            make_message("r1", "ANSWER-ok", 2, reply_to="q1", sender="bob"),
        ]

        element = engine.compress([_bundle(events, age=60)], budget=300, now=NOW).get("bundle")

        assert element.level == CompressionLevel.SUMMARY
        assert element.content == "[summary of bundle] 2 messages: ANSWER-ok"

    def test_condensed_bundle_uses_historical_tier(self, engine):
        """The condensed level drops whole threads instead of cutting characters."""
        # Setup
        events = [make_message(f"h{i}", f"Note {i} " + "x" * 190 + ".", i) for i in range(5)]
        bundle = _bundle(events, age=60)
        condensed = engine.compress_bundle(bundle, now=NOW, tier=Tier.HISTORICAL)

        # Execute
        element = engine.compress([bundle], budget=len(condensed.render()), now=NOW).get("bundle")

        # Verify
        assert element.level == CompressionLevel.CONDENSED
        assert element.tier == Tier.RECENT
        assert element.content == condensed.render()
        assert condensed.kept_event_ids == {"h2", "h3", "h4"}
        _assert_threads_intact(events, condensed)
