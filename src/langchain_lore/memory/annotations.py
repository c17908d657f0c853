"""
Metadata extraction from summary text.

Summaries may start with bracketed annotations written by the model:

    [Importance: 8/10] [Topics: the heist, the vault] [Tone: tense] Ann and Bob ...

``RegexAnnotationParser`` reads those annotations and fills in everything
else (memory type, tone, characters, sub-scores, relationships, world facts)
from keyword and pattern heuristics. The heuristics can over- or under-match;
extraction itself never fails and always supplies defaults.

The parser sits behind the ``AnnotationParser`` protocol so a structured
output contract from the provider can replace it without touching the
pipeline.
"""

import re
from dataclasses import dataclass, field
from typing import Optional, Protocol

from .nouns import detect_proper_nouns
from .records import MemoryType

DEFAULT_IMPORTANCE = 5

_ANNOTATION = re.compile(
    r"^\s*\[\s*(importance|topics|characters|tone|context)\s*:\s*([^\]]*)\]",
    re.IGNORECASE,
)
_NUMBER = re.compile(r"(\d+(?:\.\d+)?)")

# Keyword families, checked against lowercased text
KEYWORD_FAMILIES: dict[MemoryType, tuple[str, ...]] = {
    MemoryType.RELATIONSHIP: (
        "relationship", "friend", "friendship", "love", "lover", "trust", "betray",
        "ally", "alliance", "enemy", "rival", "married", "kiss", "romance",
        "partner", "bond",
    ),
    MemoryType.PLOT: (
        "quest", "mission", "plan", "revealed", "discovered", "secret", "battle",
        "attack", "escape", "prophecy", "artifact", "died", "death", "killed",
        "journey", "stole", "heist",
    ),
    MemoryType.EMOTIONAL: (
        "cried", "tears", "angry", "anger", "afraid", "fear", "happy", "joy",
        "sad", "grief", "mourned", "furious", "terrified", "heartbroken",
        "ashamed", "relieved", "anxious",
    ),
    MemoryType.WORLDBUILDING: (
        "kingdom", "empire", "city", "village", "world", "realm", "magic",
        "history", "legend", "ancient", "located", "continent", "guild",
        "religion", "tradition",
    ),
}

# Tie-break order when two families match equally often
_TYPE_PRIORITY = (
    MemoryType.RELATIONSHIP,
    MemoryType.PLOT,
    MemoryType.EMOTIONAL,
    MemoryType.WORLDBUILDING,
)

TONE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "joyful": ("happy", "joy", "laughed", "celebrate", "delighted"),
    "sad": ("sad", "cried", "tears", "grief", "mourned", "heartbroken"),
    "angry": ("angry", "furious", "rage", "shouted", "anger"),
    "fearful": ("afraid", "fear", "terrified", "anxious", "panic"),
    "romantic": ("love", "kiss", "romance", "confessed", "embrace"),
    "tense": ("tense", "threat", "danger", "argued", "standoff"),
}

DEVELOPMENT_KEYWORDS = (
    "realized", "learned", "decided", "changed", "grew", "confessed",
    "admitted", "promised", "vowed", "forgave", "accepted", "overcame",
)

_RELATION_BECAME = re.compile(
    r"\b([A-Z][a-z]+) and ([A-Z][a-z]+) (?:became|become|are now|were now) ([a-z]+(?: [a-z]+)?)"
)
_RELATION_VERB = re.compile(
    r"\b([A-Z][a-z]+) (trusts|loves|hates|fears|distrusts|admires|betrayed|befriended|"
    r"married|kissed|forgave|protects|serves|trusted|loved|hated|feared) ([A-Z][a-z]+)"
)
_WORLD_FACT = re.compile(
    r"\b[Tt]he ([A-Za-z]+(?: [A-Za-z]+){0,2}) (is|has|was|lies|stands) ([^.;!?\n]+)"
)
_TRAIT = re.compile(
    r"\b([A-Z][a-z]+) (?:is|was|seems|remains) (?:a |an |very |quite |deeply )?([a-z]+(?: [a-z]+)?)"
)

_LOCATION_WORDS = {
    "city", "tower", "castle", "forest", "village", "kingdom", "river", "mountain",
    "tavern", "inn", "temple", "house", "room", "cave", "island", "harbor",
    "palace", "road", "library", "market",
}
_ORGANISATION_WORDS = {"guild", "order", "council", "army", "church", "company", "court", "clan"}
_OBJECT_WORDS = {
    "sword", "ring", "amulet", "book", "key", "map", "artifact", "crown", "stone",
    "letter", "vault", "door", "ship",
}
_TRAIT_STOPWORDS = {
    "the", "a", "an", "not", "now", "here", "there", "going", "being", "about",
    "in", "at", "on", "to", "with", "still", "also", "just", "gone", "back",
}
_CONJUNCTIONS = {"and", "but", "or", "to", "with", "after", "before"}
_NON_NAMES = {"The", "This", "That", "There", "Then", "When", "She", "He", "They", "It"}


@dataclass
class Annotations:
    """Metadata fragment extracted from one summary."""

    text: str
    importance: int = DEFAULT_IMPORTANCE
    topics: list[str] = field(default_factory=list)
    characters: list[str] = field(default_factory=list)
    tone: str = "neutral"
    context_note: Optional[str] = None
    memory_type: MemoryType = MemoryType.GENERAL
    confidence: float = 0.8
    relationships: list[dict] = field(default_factory=list)
    world_facts: list[dict] = field(default_factory=list)
    character_development: int = 1
    plot_significance: int = 1
    emotional_impact: int = 1
    annotated: set[str] = field(default_factory=set)


class AnnotationParser(Protocol):
    def parse(self, text: str) -> Annotations: ...


def _split_list(value: str) -> list[str]:
    items = []
    for part in value.split(","):
        part = part.strip().strip("\"'")
        if part and part.lower() not in ("none", "n/a") and part not in items:
            items.append(part)
    return items


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def keyword_hits(lowered: str, keywords: tuple[str, ...]) -> list[str]:
    return [kw for kw in keywords if re.search(rf"\b{re.escape(kw)}", lowered)]


def infer_memory_type(lowered: str) -> tuple[MemoryType, dict[MemoryType, list[str]]]:
    hits = {mtype: keyword_hits(lowered, words) for mtype, words in KEYWORD_FAMILIES.items()}
    best = MemoryType.GENERAL
    best_count = 0
    for mtype in _TYPE_PRIORITY:
        count = len(hits[mtype])
        if count > best_count:
            best, best_count = mtype, count
    return best, hits


def infer_tone(lowered: str) -> str:
    best, best_count = "neutral", 0
    for tone, words in TONE_KEYWORDS.items():
        count = len(keyword_hits(lowered, words))
        if count > best_count:
            best, best_count = tone, count
    return best


def extract_relationships(text: str) -> list[dict]:
    relationships = []
    for match in _RELATION_BECAME.finditer(text):
        a, b = match.group(1), match.group(2)
        kind = " ".join(w for w in match.group(3).split() if w not in _CONJUNCTIONS)
        relationships.append({"a": a, "b": b, "kind": kind})
    for match in _RELATION_VERB.finditer(text):
        a, verb, b = match.group(1), match.group(2), match.group(3)
        if a in _NON_NAMES:
            continue
        relationships.append({"a": a, "b": b, "kind": verb})
    return relationships


def categorize_subject(subject: str) -> str:
    words = set(subject.lower().split())
    if words & _LOCATION_WORDS:
        return "location"
    if words & _ORGANISATION_WORDS:
        return "organisation"
    if words & _OBJECT_WORDS:
        return "object"
    return "general"


def extract_world_facts(text: str) -> list[dict]:
    facts = []
    for match in _WORLD_FACT.finditer(text):
        subject = match.group(1).strip()
        content = match.group(0).strip()
        facts.append({
            "content": content,
            "category": categorize_subject(subject),
            "subject": subject.lower(),
        })
    return facts


def extract_traits(text: str) -> list[dict]:
    """Find "Name is (a) trait" statements."""
    traits = []
    for match in _TRAIT.finditer(text):
        name, trait = match.group(1), match.group(2).strip()
        if name in _NON_NAMES or trait.split()[0] in _TRAIT_STOPWORDS:
            continue
        traits.append({"character": name, "trait": trait, "content": match.group(0).strip()})
    return traits


class RegexAnnotationParser:
    """Default annotation parser: leading bracket annotations + heuristics."""

    def __init__(self, max_characters: int = 8, max_topics: int = 5):
        self.max_characters = max_characters
        self.max_topics = max_topics

    def parse(self, text: str) -> Annotations:
        remaining = (text or "").strip()
        result = Annotations(text=remaining)

        # Leading annotations
        while True:
            match = _ANNOTATION.match(remaining)
            if not match:
                break
            key, value = match.group(1).lower(), match.group(2).strip()
            remaining = remaining[match.end():].lstrip()
            result.annotated.add(key)
            if key == "importance":
                number = _NUMBER.search(value)
                if number:
                    result.importance = int(_clamp(round(float(number.group(1))), 1, 10))
                else:
                    result.annotated.discard(key)
            elif key == "topics":
                result.topics = _split_list(value)
            elif key == "characters":
                result.characters = _split_list(value)
            elif key == "tone":
                result.tone = value.lower() or "neutral"
            elif key == "context":
                result.context_note = value or None

        result.text = remaining
        lowered = remaining.lower()

        memory_type, hits = infer_memory_type(lowered)
        result.memory_type = memory_type

        if "tone" not in result.annotated:
            result.tone = infer_tone(lowered)
        if "characters" not in result.annotated:
            result.characters = detect_proper_nouns(remaining)[: self.max_characters]
        if "topics" not in result.annotated:
            topics: list[str] = []
            for mtype in _TYPE_PRIORITY:
                for kw in hits[mtype]:
                    if kw not in topics:
                        topics.append(kw)
            result.topics = topics[: self.max_topics]

        result.relationships = extract_relationships(remaining)
        result.world_facts = extract_world_facts(remaining)

        emotional_hits = len(hits[MemoryType.EMOTIONAL])
        plot_hits = len(hits[MemoryType.PLOT])
        relationship_hits = len(hits[MemoryType.RELATIONSHIP])
        development_hits = len(keyword_hits(lowered, DEVELOPMENT_KEYWORDS))
        tone_bonus = 0 if result.tone == "neutral" else 2

        result.emotional_impact = int(_clamp(1 + 2 * emotional_hits + tone_bonus, 1, 10))
        result.plot_significance = int(_clamp(1 + 2 * plot_hits + len(result.world_facts), 1, 10))
        result.character_development = int(
            _clamp(1 + 2 * development_hits + relationship_hits + len(result.relationships), 1, 10)
        )

        result.confidence = self._confidence(remaining, result.annotated)
        return result

    @staticmethod
    def _confidence(text: str, annotated: set[str]) -> float:
        confidence = 0.8 + 0.05 * len(annotated)
        if len(text) < 50:
            confidence -= 0.1
        if len(text) < 20:
            confidence -= 0.1
        if len(text) > 600:
            confidence -= 0.05
        return round(_clamp(confidence, 0.3, 0.95), 3)
