"""
Audience Synthesis Engine

Rolls a project's ended conversations up into an audience synthesis:
recurring questions, knowledge gaps, document sections worth revisiting,
the direction of visitor sentiment and a handful of insights.

Deterministic heuristics only - no LLM calls, no database access. The
same conversations and previous synthesis always give the same output.
Anything satisfying ``SynthesisGenerator`` can be used in its place.
"""
import re
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence, Tuple


SENTIMENT_SCORES = {
    "positive": 1.0,
    "neutral": 0.0,
    "mixed": -0.5,
    "negative": -1.0,
}
UNSATISFIED_SENTIMENTS = frozenset({"negative", "mixed"})

TREND_THRESHOLD = 0.25
MAX_QUESTIONS = 10
MAX_GAPS = 10
MAX_SUGGESTIONS = 10
MAX_OVERVIEW_TOPICS = 3

SEVERITY_WEIGHTS = {"high": 3, "medium": 2, "low": 1}

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class MessageDigest:
    """The parts of a message the engine looks at."""
    role: str
    content: str
    cited_documents: List[str] = field(default_factory=list)
    # (document id, section title) pairs an answer drew on
    cited_sections: List[Tuple[str, str]] = field(default_factory=list)


@dataclass
class ConversationDigest:
    """An ended conversation, detached from the database."""
    id: str
    started_at: datetime
    ended_at: datetime
    message_count: int
    sentiment: Optional[str] = None
    summary: Optional[str] = None
    topics: List[str] = field(default_factory=list)
    messages: List[MessageDigest] = field(default_factory=list)


@dataclass
class SynthesisData:
    """Payload of one synthesis version (without versioning metadata)."""
    overview: str
    common_questions: List[dict]
    knowledge_gaps: List[dict]
    document_suggestions: List[dict]
    sentiment_trend: str
    insights: List[str]

    @classmethod
    def from_row(cls, row) -> "SynthesisData":
        return cls(
            overview=row.overview,
            common_questions=list(row.common_questions or []),
            knowledge_gaps=list(row.knowledge_gaps or []),
            document_suggestions=list(row.document_suggestions or []),
            sentiment_trend=row.sentiment_trend,
            insights=list(row.insights or []),
        )


@dataclass
class PreviousSynthesis:
    """The version an incremental run builds on."""
    version: int
    data: SynthesisData
    conversation_count: int
    total_messages: int
    date_range_from: datetime
    date_range_to: datetime


class SynthesisGenerator(Protocol):
    """Turns conversations (plus an optional previous version) into synthesis data."""

    def generate(
        self,
        conversations: Sequence[ConversationDigest],
        previous: Optional[PreviousSynthesis] = None,
    ) -> SynthesisData:
        ...


def normalize_question(text: str) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    text = _NON_WORD.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", text).strip()


def severity_for(count: int) -> str:
    if count >= 3:
        return "high"
    if count == 2:
        return "medium"
    return "low"


class SynthesisEngine:
    """
    Heuristic synthesis generator.

    With ``previous`` the new conversations are merged into the previous
    version's payload (incremental update); without it everything is
    computed from ``conversations`` alone (full regeneration).
    """

    def generate(
        self,
        conversations: Sequence[ConversationDigest],
        previous: Optional[PreviousSynthesis] = None,
    ) -> SynthesisData:
        conversations = sorted(conversations, key=lambda c: (c.ended_at, c.id))
        prior = previous.data if previous else None

        questions = self._common_questions(conversations, prior)
        gaps = self._knowledge_gaps(conversations, prior)
        suggestions = self._document_suggestions(conversations, prior)
        trend = self._sentiment_trend(conversations, prior)

        return SynthesisData(
            overview=self._overview(conversations, previous, trend),
            common_questions=questions,
            knowledge_gaps=gaps,
            document_suggestions=suggestions,
            sentiment_trend=trend,
            insights=self._insights(conversations, questions, gaps, trend),
        )

    def _common_questions(
        self,
        conversations: Sequence[ConversationDigest],
        prior: Optional[SynthesisData],
    ) -> List[dict]:
        entries: "OrderedDict[str, dict]" = OrderedDict()
        if prior:
            for item in prior.common_questions:
                entries[normalize_question(item["pattern"])] = {
                    "pattern": item["pattern"],
                    "frequency": int(item.get("frequency", 1)),
                    "documents": list(item.get("documents", [])),
                }

        for conversation in conversations:
            cited = sorted({
                name
                for message in conversation.messages
                for name in message.cited_documents
            })
            for message in conversation.messages:
                if message.role != "user":
                    continue
                text = message.content.strip()
                if not text.endswith("?"):
                    continue
                key = normalize_question(text)
                if not key:
                    continue
                entry = entries.setdefault(key, {"pattern": text, "frequency": 0, "documents": []})
                entry["frequency"] += 1
                entry["documents"] = sorted(set(entry["documents"]) | set(cited))

        ranked = sorted(entries.values(), key=lambda e: (-e["frequency"], e["pattern"].lower()))
        return ranked[:MAX_QUESTIONS]

    def _knowledge_gaps(
        self,
        conversations: Sequence[ConversationDigest],
        prior: Optional[SynthesisData],
    ) -> List[dict]:
        counts: Counter = Counter()
        labels: Dict[str, str] = {}
        if prior:
            for gap in prior.knowledge_gaps:
                key = gap["topic"].strip().lower()
                labels.setdefault(key, gap["topic"])
                counts[key] += SEVERITY_WEIGHTS.get(gap.get("severity"), 1)

        for conversation in conversations:
            if (conversation.sentiment or "").lower() not in UNSATISFIED_SENTIMENTS:
                continue
            for topic in conversation.topics or []:
                key = topic.strip().lower()
                if not key:
                    continue
                labels.setdefault(key, topic.strip())
                counts[key] += 1

        ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:MAX_GAPS]
        return [
            {
                "topic": labels[key],
                "severity": severity_for(count),
                "suggestion": f"Add or clarify material covering {labels[key]}",
            }
            for key, count in ranked
        ]

    def _document_suggestions(
        self,
        conversations: Sequence[ConversationDigest],
        prior: Optional[SynthesisData],
    ) -> List[dict]:
        counts: Counter = Counter()
        for conversation in conversations:
            if (conversation.sentiment or "").lower() not in UNSATISFIED_SENTIMENTS:
                continue
            for message in conversation.messages:
                for document_id, section in message.cited_sections:
                    counts[(document_id, section)] += 1

        suggestions = [
            {
                "documentId": document_id,
                "section": section,
                "suggestion": (
                    f"Cited in {count} unsatisfied conversation(s); "
                    f"consider expanding or clarifying this section"
                ),
            }
            for (document_id, section), count in sorted(
                counts.items(), key=lambda kv: (-kv[1], kv[0])
            )
        ]

        if prior:
            seen = {(s["documentId"], s["section"]) for s in suggestions}
            suggestions.extend(
                s for s in prior.document_suggestions
                if (s["documentId"], s["section"]) not in seen
            )
        return suggestions[:MAX_SUGGESTIONS]

    def _sentiment_trend(
        self,
        conversations: Sequence[ConversationDigest],
        prior: Optional[SynthesisData],
    ) -> str:
        scores = [
            SENTIMENT_SCORES[c.sentiment.lower()]
            for c in conversations
            if c.sentiment and c.sentiment.lower() in SENTIMENT_SCORES
        ]
        if len(scores) < 2:
            return prior.sentiment_trend if prior else "stable"

        half = len(scores) // 2
        earlier = sum(scores[:half]) / half
        later = sum(scores[half:]) / (len(scores) - half)
        if later - earlier > TREND_THRESHOLD:
            return "improving"
        if earlier - later > TREND_THRESHOLD:
            return "declining"
        return "stable"

    def _overview(
        self,
        conversations: Sequence[ConversationDigest],
        previous: Optional[PreviousSynthesis],
        trend: str,
    ) -> str:
        conversation_count = len(conversations) + (previous.conversation_count if previous else 0)
        message_count = sum(c.message_count for c in conversations) + (
            previous.total_messages if previous else 0
        )

        topics = Counter(
            topic.strip()
            for c in conversations
            for topic in (c.topics or [])
            if topic.strip()
        )
        parts = [
            f"{conversation_count} conversation(s) with {message_count} message(s) analysed."
        ]
        if topics:
            top = [t for t, _ in sorted(topics.items(), key=lambda kv: (-kv[1], kv[0]))]
            parts.append("Most discussed recently: " + ", ".join(top[:MAX_OVERVIEW_TOPICS]) + ".")
        parts.append(f"Visitor sentiment is {trend}.")
        return " ".join(parts)

    def _insights(
        self,
        conversations: Sequence[ConversationDigest],
        questions: List[dict],
        gaps: List[dict],
        trend: str,
    ) -> List[str]:
        insights = []
        if questions:
            top = questions[0]
            insights.append(f'Most frequent question: "{top["pattern"]}" (asked {top["frequency"]} time(s))')
        high_gaps = [g["topic"] for g in gaps if g["severity"] == "high"]
        if high_gaps:
            insights.append("High-severity knowledge gaps: " + ", ".join(high_gaps))

        unsatisfied = sum(
            1 for c in conversations
            if (c.sentiment or "").lower() in UNSATISFIED_SENTIMENTS
        )
        if conversations:
            share = unsatisfied * 100 // len(conversations)
            insights.append(f"{share}% of the latest {len(conversations)} conversation(s) ended unsatisfied")

        uncited = sum(
            1 for c in conversations
            if not any(m.cited_documents for m in c.messages)
        )
        if uncited:
            insights.append(f"{uncited} conversation(s) were answered without citing any document")

        if trend != "stable":
            insights.append(f"Sentiment is {trend} compared with earlier conversations")
        return insights
