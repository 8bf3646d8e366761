"""
Compression Utilities and Data Structures

Data structures and helpers for the CompressionEngineComponent: remote bundle
messages, temporal tiers, conversational threads and their exchange units,
relevance scoring and the default extractive summarizer.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Dict, List, Any, Optional, Set, Callable, Iterable

import tiktoken

from ..space.loom_types import Event

logger = logging.getLogger(__name__)

Summarizer = Callable[[List[str], int], str]

_WORD_RE = re.compile(r"[a-z0-9][a-z0-9_'-]*")
_STOPWORDS = {
    "a", "an", "the", "and", "or", "but", "if", "of", "to", "in", "on", "at", "for", "by", "with",
    "is", "are", "was", "were", "be", "been", "it", "this", "that", "as", "from", "we", "you", "i",
}


class CompressionLevel(IntEnum):
    """Per-element compression step; higher is smaller."""
    VERBATIM = 0
    CONDENSED = 1
    SUMMARY = 2
    REFERENCE = 3


MAX_COMPRESSION_LEVEL = CompressionLevel.REFERENCE


class Tier(Enum):
    """Age bucket of a remote bundle relative to the present."""
    RECENT = "recent"
    MID_TERM = "mid_term"
    HISTORICAL = "historical"


class Relevance(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class BundleMessage:
    """A remote event reduced to what compression needs."""
    event_id: str
    sender: str
    text: str
    timestamp: float
    reply_to: Optional[str] = None

    @classmethod
    def from_event(cls, event: Event) -> 'BundleMessage':
        payload = event.payload or {}
        text = payload.get("text")
        if text is None:
            text = payload.get("content")
        if text is None:
            text = json.dumps(payload, sort_keys=True, default=str)
        sender = payload.get("sender") or payload.get("sender_id") or event.object_id or event.branch_id
        return cls(
            event_id=event.id,
            sender=str(sender),
            text=str(text),
            timestamp=event.timestamp,
            reply_to=payload.get("reply_to"),
        )


def format_message(message: BundleMessage) -> str:
    return f"{message.sender}: {message.text}"


@dataclass
class Exchange:
    """
    A request and its direct responses. Exchanges are kept or elided whole.
    A request without responses is a single-message exchange.
    """
    request: BundleMessage
    responses: List[BundleMessage] = field(default_factory=list)

    @property
    def messages(self) -> List[BundleMessage]:
        return [self.request] + self.responses

    @property
    def event_ids(self) -> Set[str]:
        return {m.event_id for m in self.messages}

    @property
    def started_at(self) -> float:
        return self.request.timestamp


@dataclass
class Thread:
    """Causally linked messages (connected through reply_to) in bundle order."""
    thread_id: str
    messages: List[BundleMessage]
    exchanges: List[Exchange]
    score: float = 0.0

    @property
    def text(self) -> str:
        return " ".join(m.text for m in self.messages)

    def exchange_of(self, event_id: str) -> Optional[Exchange]:
        for exchange in self.exchanges:
            if event_id in exchange.event_ids:
                return exchange
        return None


class _UnionFind:
    def __init__(self, items: Iterable[str]):
        self._parent = {item: item for item in items}

    def find(self, item: str) -> str:
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: str, b: str) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            self._parent[rb] = ra


def build_threads(messages: List[BundleMessage]) -> List[Thread]:
    """
    Group messages into threads over reply_to links. A reply to a message
    outside the bundle starts its own thread. Threads are ordered by their
    first message.
    """
    by_id = {m.event_id: m for m in messages}
    uf = _UnionFind(by_id.keys())
    for message in messages:
        if message.reply_to and message.reply_to in by_id:
            uf.union(message.reply_to, message.event_id)

    grouped: Dict[str, List[BundleMessage]] = {}
    for message in messages:
        grouped.setdefault(uf.find(message.event_id), []).append(message)

    threads = []
    for members in grouped.values():
        threads.append(Thread(thread_id=members[0].event_id, messages=members,
                              exchanges=build_exchanges(members)))
    threads.sort(key=lambda t: (t.messages[0].timestamp, t.thread_id))
    return threads


def build_exchanges(thread_messages: List[BundleMessage]) -> List[Exchange]:
    """
    Partition a thread into exchanges. Every message that is not a direct
    response to an earlier message of the thread opens an exchange; a direct
    response joins the exchange whose request it answers, or opens its own
    exchange when its request is itself a response (a follow-up turn).
    """
    ids = {m.event_id for m in thread_messages}
    exchanges: List[Exchange] = []
    opened: Dict[str, Exchange] = {}
    for message in thread_messages:
        parent = message.reply_to if message.reply_to in ids else None
        if parent is not None and parent in opened:
            opened[parent].responses.append(message)
            continue
        exchange = Exchange(request=message)
        exchanges.append(exchange)
        opened[message.event_id] = exchange
    return exchanges


def exchange_closure(thread: Thread, chosen: Iterable[Exchange]) -> List[Exchange]:
    """
    Adds to chosen every exchange holding the request of a kept message, so no
    kept response is ever separated from what it answers. Returns exchanges in
    thread order.
    """
    by_id = {m.event_id: m for m in thread.messages}
    keep: List[Exchange] = []
    pending = list(chosen)
    while pending:
        exchange = pending.pop()
        if any(exchange is k for k in keep):
            continue
        keep.append(exchange)
        for message in exchange.messages:
            parent = message.reply_to
            if parent and parent in by_id:
                owner = thread.exchange_of(parent)
                if owner is not None and not any(owner is k for k in keep):
                    pending.append(owner)
    order = {id(e): i for i, e in enumerate(thread.exchanges)}
    return sorted(keep, key=lambda e: order[id(e)])


def check_thread_integrity(thread: Thread, kept_event_ids: Set[str]) -> bool:
    """
    True when every kept message's request is also kept and every exchange is
    either kept whole or dropped whole.
    """
    by_id = {m.event_id: m for m in thread.messages}
    for event_id in kept_event_ids:
        message = by_id.get(event_id)
        if message is None:
            continue
        if message.reply_to in by_id and message.reply_to not in kept_event_ids:
            return False
    for exchange in thread.exchanges:
        members = exchange.event_ids
        present = members & kept_event_ids
        if present and present != members:
            return False
    return True


def tokenize(text: str) -> List[str]:
    return [w for w in _WORD_RE.findall(text.lower()) if w not in _STOPWORDS]


def score_relevance(text: str, focus_topics: Optional[List[str]]) -> Optional[float]:
    """
    Fraction of focus terms (0..1) present in text. None when there are no
    focus topics to score against.
    """
    if not focus_topics:
        return None
    terms: Set[str] = set()
    for topic in focus_topics:
        terms.update(tokenize(topic))
    if not terms:
        return None
    words = set(tokenize(text))
    return len(terms & words) / len(terms)


def classify_relevance(score: Optional[float], high_threshold: float, low_threshold: float) -> Relevance:
    if score is None or score >= high_threshold:
        return Relevance.HIGH
    if score < low_threshold:
        return Relevance.LOW
    return Relevance.MEDIUM


def classify_tier(age_seconds: float, recent_window: float, mid_term_window: float) -> Tier:
    if age_seconds <= recent_window:
        return Tier.RECENT
    if age_seconds <= mid_term_window:
        return Tier.MID_TERM
    return Tier.HISTORICAL


def extractive_summary(texts: List[str], max_chars: int) -> str:
    """
    Default summarizer: picks the sentences carrying the most frequent
    content words, keeps them in original order and stops at max_chars.
    """
    sentences: List[str] = []
    for text in texts:
        for sentence in re.split(r"(?<=[.!?])\s+|\n+", text.strip()):
            if sentence.strip():
                sentences.append(sentence.strip())
    if not sentences:
        return ""

    frequency: Dict[str, int] = {}
    for sentence in sentences:
        for word in tokenize(sentence):
            frequency[word] = frequency.get(word, 0) + 1

    def weight(item):
        index, sentence = item
        words = tokenize(sentence)
        if not words:
            return (0.0, -index)
        return (sum(frequency[w] for w in words) / len(words), -index)

    ranked = sorted(enumerate(sentences), key=weight, reverse=True)
    chosen: List[int] = []
    used = 0
    for index, sentence in ranked:
        cost = len(sentence) + (1 if chosen else 0)
        if used + cost > max_chars:
            continue
        chosen.append(index)
        used += cost
    if not chosen:
        return sentences[ranked[0][0]][:max_chars]
    return " ".join(sentences[i] for i in sorted(chosen))


_ENCODINGS: Dict[str, Any] = {}
_UNAVAILABLE_MODELS: Set[str] = set()


def get_encoding(model: str):
    """
    Cached tiktoken encoding for a model name. Returns None when tiktoken has
    no encoding for the model or cannot load it (its BPE files are fetched on
    first use).
    """
    encoding = _ENCODINGS.get(model)
    if encoding is not None or model in _UNAVAILABLE_MODELS:
        return encoding
    try:
        encoding = tiktoken.encoding_for_model(model)
    except Exception as e:
        logger.warning(f"tiktoken encoding for '{model}' unavailable, estimating by characters: {e}")
        _UNAVAILABLE_MODELS.add(model)
        return None
    _ENCODINGS[model] = encoding
    return encoding


def estimate_tokens(text: str, chars_per_token: int = 4, model: Optional[str] = None) -> int:
    """
    Token count of text with the tiktoken encoding of model. Without a model,
    or when its encoding cannot be loaded, falls back to one token per
    chars_per_token characters.
    """
    if not text:
        return 0
    encoding = get_encoding(model) if model else None
    if encoding is not None:
        return len(encoding.encode(text, disallowed_special=()))
    return max(1, len(text) // max(1, chars_per_token))


@dataclass
class PartialBundle:
    """
    Result of tiered compression of one remote bundle: an ordered list of
    segments, each either a kept message or a summary standing in for elided
    messages.
    """
    tier: Tier
    segments: List[Dict[str, Any]] = field(default_factory=list)
    kept_event_ids: Set[str] = field(default_factory=set)
    elided_event_ids: Set[str] = field(default_factory=set)

    def add_message(self, message: BundleMessage) -> None:
        self.segments.append({"type": "message", "event_id": message.event_id, "text": format_message(message)})
        self.kept_event_ids.add(message.event_id)

    def add_summary(self, text: str, covers: Iterable[str]) -> None:
        covered = list(covers)
        if not covered:
            return
        self.segments.append({"type": "summary", "covers": covered, "text": f"[summary] {text}"})
        self.elided_event_ids.update(covered)

    def render(self) -> str:
        return "\n".join(segment["text"] for segment in self.segments)
