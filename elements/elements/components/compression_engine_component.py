"""
Compression Engine Component
Fits a set of RenderElements (local state and remote history bundles) into a
token budget for the agent context.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Callable

from host.config import CompressionConfig
from host.observability import get_tracer
from rendering.api import RenderElement, RenderElementKind, CompressionHint

from .base_component import Component
from elements.component_registry import register_component
from .utils.compression_utils import (
    BundleMessage,
    CompressionLevel,
    Exchange,
    MAX_COMPRESSION_LEVEL,
    PartialBundle,
    Relevance,
    Summarizer,
    Thread,
    Tier,
    build_threads,
    check_thread_integrity,
    classify_relevance,
    classify_tier,
    estimate_tokens,
    exchange_closure,
    extractive_summary,
    score_relevance,
)

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

WARNING_BUDGET_EXCEEDED = "BUDGET_EXCEEDED"


@dataclass
class CompressedElement:
    element_id: str
    kind: RenderElementKind
    level: CompressionLevel
    content: str
    tokens: int
    tier: Optional[Tier] = None
    preserved: bool = False


@dataclass
class CompressedAssembly:
    """
    Output of CompressionEngineComponent.compress, in input order.

    BUDGET_EXCEEDED in warnings means every compressible element reached the
    maximum level and the total is still over budget. The result is still the
    best effort and usable.
    """
    elements: List[CompressedElement]
    total_tokens: int
    budget: int
    warnings: List[str] = field(default_factory=list)

    @property
    def budget_exceeded(self) -> bool:
        return WARNING_BUDGET_EXCEEDED in self.warnings

    def get(self, element_id: str) -> Optional[CompressedElement]:
        for element in self.elements:
            if element.element_id == element_id:
                return element
        return None

    def render(self, separator: str = "\n\n") -> str:
        return separator.join(e.content for e in self.elements if e.content)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_tokens": self.total_tokens,
            "budget": self.budget,
            "warnings": list(self.warnings),
            "elements": [
                {"element_id": e.element_id, "kind": e.kind.value, "level": e.level.name.lower(),
                 "tokens": e.tokens, "tier": e.tier.value if e.tier else None}
                for e in self.elements
            ],
        }


@register_component
class CompressionEngineComponent(Component):
    """
    Two passes over the elements:

    1. Remote bundles are tiered by age and compressed at thread granularity
       (recent kept, mid_term by relevance to the focus topics, historical as a
       summary plus a few key messages).
    2. A global tightening loop raises the compression level of the least
       important, then least recent, element one step at a time until the
       estimate fits the budget.

    Elements hinted preserve_verbatim are exempt from both passes. The engine
    holds no state between calls; abandoning a call needs no cleanup.
    """

    COMPONENT_TYPE = "CompressionEngineComponent"

    def __init__(self, config: Optional[CompressionConfig] = None,
                 summarizer: Optional[Summarizer] = None,
                 size_estimator: Optional[Callable[[str], int]] = None, **kwargs):
        super().__init__(**kwargs)
        self.config = config or CompressionConfig()
        self._summarizer: Summarizer = summarizer or extractive_summary
        self._size_estimator = size_estimator

    def estimate_size(self, text: str) -> int:
        if self._size_estimator is not None:
            return self._size_estimator(text)
        return estimate_tokens(text, self.config.chars_per_token, self.config.tokenizer_model or None)

    def summarize(self, texts: List[str], max_chars: Optional[int] = None) -> str:
        return self._summarizer(texts, max_chars or self.config.summary_chars)

    # --- Entry point ---

    def compress(self, elements: List[RenderElement], budget: Optional[int] = None,
                 hints: Optional[Dict[str, CompressionHint]] = None,
                 focus_topics: Optional[List[str]] = None,
                 now: Optional[float] = None) -> CompressedAssembly:
        """
        Args:
            elements: Elements to fit, in presentation order
            budget: Token budget; the configured default when None
            hints: Per-element hints overriding each element's own hint
            focus_topics: Topics used to score remote thread relevance
            now: Reference time for tiering; the current time when None
        """
        budget = budget if budget is not None else self.config.default_budget_tokens
        now = now if now is not None else time.time()
        hints = hints or {}

        with tracer.start_as_current_span("compression.compress") as span:
            span.set_attribute("compression.element_count", len(elements))
            span.set_attribute("compression.budget", budget)

            entries = []
            for index, element in enumerate(elements):
                hint = hints.get(element.element_id) or element.hint
                entry = _Entry(index=index, element=element, hint=hint, base=element.content, tier=None)
                if element.is_remote_bundle and element.events and not hint.preserve_verbatim:
                    partial = self.compress_bundle(element, focus_topics, now)
                    entry.base, entry.tier = partial.render(), partial.tier
                    entry.focus_topics, entry.now = focus_topics, now
                entries.append(entry)

            total = sum(self._tokens_at(e) for e in entries)
            warnings: List[str] = []
            while total > budget:
                candidates = [e for e in entries if not e.hint.preserve_verbatim and e.level < MAX_COMPRESSION_LEVEL]
                if not candidates:
                    warnings.append(WARNING_BUDGET_EXCEEDED)
                    logger.warning(f"[{self.owner_id}] Compression could not fit budget {budget}: {total} tokens at maximum compression")
                    break
                target = min(candidates, key=lambda e: (e.hint.importance, e.element.timestamp, e.index))
                before = self._tokens_at(target)
                target.level = CompressionLevel(target.level + 1)
                total += self._tokens_at(target) - before

            result = CompressedAssembly(
                elements=[
                    CompressedElement(
                        element_id=e.element.element_id,
                        kind=e.element.kind,
                        level=e.level,
                        content=self._render_at(e),
                        tokens=self._tokens_at(e),
                        tier=e.tier,
                        preserved=e.hint.preserve_verbatim,
                    )
                    for e in entries
                ],
                total_tokens=total,
                budget=budget,
                warnings=warnings,
            )
            span.set_attribute("compression.total_tokens", total)
            span.set_attribute("compression.budget_exceeded", result.budget_exceeded)

        logger.debug(f"[{self.owner_id}] Compressed {len(elements)} elements to {total}/{budget} tokens")
        return result

    # --- Global loop helpers ---

    def _render_at(self, entry: '_Entry') -> str:
        cached = entry.rendered.get(entry.level)
        if cached is not None:
            return cached
        if entry.level == CompressionLevel.VERBATIM:
            text = entry.base
        elif entry.tier is not None and entry.level < CompressionLevel.REFERENCE:
            text = self._bundle_at(entry)
        elif entry.level == CompressionLevel.CONDENSED:
            text = self._condense(entry.base)
        elif entry.level == CompressionLevel.SUMMARY:
            text = entry.hint.suggested_summary or self.summarize([entry.base])
            text = f"[summary of {entry.element.element_id}] {text}"
        else:
            text = f"[{entry.element.kind.value} {entry.element.element_id} omitted]"
        entry.rendered[entry.level] = text
        return text

    def _bundle_at(self, entry: '_Entry') -> str:
        """
        Raised levels of a tiered bundle drop or summarize whole exchanges,
        never characters: CONDENSED re-runs the historical tier, SUMMARY
        replaces every message with one summary.
        """
        element = entry.element
        if entry.level == CompressionLevel.CONDENSED:
            return self.compress_bundle(element, entry.focus_topics, entry.now, tier=Tier.HISTORICAL).render()
        messages = [BundleMessage.from_event(e) for e in element.events]
        text = entry.hint.suggested_summary or self.summarize([m.text for m in messages])
        return f"[summary of {element.element_id}] {len(messages)} messages: {text}"

    def _tokens_at(self, entry: '_Entry') -> int:
        return self.estimate_size(self._render_at(entry))

    def _condense(self, text: str) -> str:
        limit = self.config.condensed_chars
        if len(text) <= limit:
            return text
        return f"{text[:limit].rstrip()} ... [+{len(text) - limit} chars]"

    # --- Remote bundle partial compression ---

    def compress_bundle(self, element: RenderElement, focus_topics: Optional[List[str]] = None,
                        now: Optional[float] = None, tier: Optional[Tier] = None) -> PartialBundle:
        """
        Tiered, thread-aware compression of one remote bundle element. The
        tier follows the bundle's age unless one is forced.
        """
        now = now if now is not None else time.time()
        if tier is None:
            tier = classify_tier(max(0.0, now - element.timestamp),
                                 self.config.recent_window_seconds, self.config.mid_term_window_seconds)
        messages = [BundleMessage.from_event(e) for e in element.events]
        threads = build_threads(messages)
        for thread in threads:
            # Without focus topics every thread counts as relevant
            score = score_relevance(thread.text, focus_topics)
            thread.score = score if score is not None else 1.0

        partial = PartialBundle(tier=tier)
        if tier == Tier.RECENT:
            for message in messages:
                partial.add_message(message)
        elif tier == Tier.MID_TERM:
            for thread in threads:
                relevance = classify_relevance(thread.score, self.config.high_relevance_threshold,
                                               self.config.low_relevance_threshold)
                self._emit_thread(partial, thread, self._mid_term_keep(thread, relevance))
        else:
            self._emit_historical(partial, threads)

        logger.debug(f"[{self.owner_id}] Bundle {element.element_id} ({tier.value}): "
                     f"{len(partial.kept_event_ids)} kept, {len(partial.elided_event_ids)} summarized")
        return partial

    def _mid_term_keep(self, thread: Thread, relevance: Relevance) -> List[Exchange]:
        if relevance == Relevance.HIGH:
            return list(thread.exchanges)
        if relevance == Relevance.LOW:
            return []
        if len(thread.exchanges) <= 2:
            return list(thread.exchanges)
        return exchange_closure(thread, [thread.exchanges[0], thread.exchanges[-1]])

    def _emit_thread(self, partial: PartialBundle, thread: Thread, keep: List[Exchange]) -> None:
        kept_ids = set()
        for exchange in keep:
            kept_ids |= exchange.event_ids
        if not check_thread_integrity(thread, kept_ids):
            logger.warning(f"[{self.owner_id}] Thread {thread.thread_id} selection would split an exchange; summarizing whole thread")
            keep, kept_ids = [], set()

        elided: List[BundleMessage] = []
        for exchange in thread.exchanges:
            if any(exchange is k for k in keep):
                self._flush_summary(partial, elided)
                elided = []
                for message in exchange.messages:
                    partial.add_message(message)
            else:
                elided.extend(exchange.messages)
        self._flush_summary(partial, elided)

    def _emit_historical(self, partial: PartialBundle, threads: List[Thread]) -> None:
        limit = self.config.historical_key_messages
        chosen: Dict[str, List[Exchange]] = {}
        used = 0
        ranked = sorted(threads, key=lambda t: (-t.score, -t.messages[-1].timestamp, t.thread_id))
        for thread in ranked:
            for exchange in thread.exchanges:
                current = chosen.get(thread.thread_id, [])
                candidate = exchange_closure(thread, current + [exchange])
                added = sum(len(e.messages) for e in candidate) - sum(len(e.messages) for e in current)
                if used + added > limit:
                    continue
                chosen[thread.thread_id] = candidate
                used += added

        elided: List[BundleMessage] = []
        kept: List[BundleMessage] = []
        for thread in threads:
            keep = chosen.get(thread.thread_id, [])
            kept_ids = set()
            for exchange in keep:
                kept_ids |= exchange.event_ids
            for message in thread.messages:
                (kept if message.event_id in kept_ids else elided).append(message)
        self._flush_summary(partial, elided)
        order = {m.event_id: i for i, m in enumerate(m for t in threads for m in t.messages)}
        for message in sorted(kept, key=lambda m: (m.timestamp, order[m.event_id])):
            partial.add_message(message)

    def _flush_summary(self, partial: PartialBundle, elided: List[BundleMessage]) -> None:
        if not elided:
            return
        text = self.summarize([m.text for m in elided])
        partial.add_summary(f"{len(elided)} messages: {text}", [m.event_id for m in elided])


class _Entry:
    """Per-call working state for one element in the tightening loop."""

    __slots__ = ("index", "element", "hint", "base", "tier", "level", "rendered", "focus_topics", "now")

    def __init__(self, index: int, element: RenderElement, hint: CompressionHint, base: str,
                 tier: Optional[Tier]):
        self.index = index
        self.element = element
        self.hint = hint
        self.base = base
        self.tier = tier
        self.level = CompressionLevel.VERBATIM
        self.rendered: Dict[CompressionLevel, str] = {}
        self.focus_topics: Optional[List[str]] = None
        self.now: Optional[float] = None
