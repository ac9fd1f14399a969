# kb.py
# Keyword-scored retrieval over the static knowledge base.
#
# Three JSON corpora (manuals, runbooks, incidents) are read once per
# KnowledgeBase instance and kept in memory. The instance lives on the
# process-scoped AppContext, so each process loads the files once.

import json
from pathlib import Path

from pydantic import BaseModel, ValidationError

from fieldfix.log import get_logger
from fieldfix.models import KBResult, KBSource

logger = get_logger(__name__)

DEFAULT_KB_DIR = Path(__file__).parent / "data" / "kb"

PHRASE_SCORE = 10
TOKEN_SCORE = 2
KEYWORD_SCORE = 3
MIN_TOKEN_LEN = 3
SNIPPET_LEN = 200


class Manual(BaseModel):
    id: str
    title: str | None = None
    equipment: str | None = None
    content: str | None = None
    keywords: list[str] = []


class Runbook(BaseModel):
    id: str
    title: str | None = None
    procedure: str | None = None
    equipment: list[str] = []
    keywords: list[str] = []


class Incident(BaseModel):
    id: str
    title: str | None = None
    problem: str | None = None
    resolution: str | None = None
    equipmentType: str | None = None
    keywords: list[str] = []


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def score_text(text: str | None, query: str) -> int:
    """+10 for the whole query as a substring, +2 per query token (len >= 3) found."""
    if not text:
        return 0

    lower_text = text.lower()
    lower_query = query.lower()
    score = 0

    if lower_query in lower_text:
        score += PHRASE_SCORE

    for word in lower_query.split():
        if len(word) < MIN_TOKEN_LEN:
            continue
        if word in lower_text:
            score += TOKEN_SCORE

    return score


def score_keywords(keywords: list[str], query: str) -> int:
    """+3 for every declared keyword that appears inside the query."""
    lower_query = query.lower()
    return sum(KEYWORD_SCORE for keyword in keywords if keyword and keyword.lower() in lower_query)


def _snippet(text: str | None) -> str:
    return (text or "")[:SNIPPET_LEN] + "..."


def format_results_for_prompt(results: list[KBResult]) -> str:
    if not results:
        return "No KB results found."
    return "\n\n".join(f"[{r.id}] {r.title} ({r.source})\n{r.snippet}" for r in results)


# ---------------------------------------------------------------------------
# KnowledgeBase
# ---------------------------------------------------------------------------


class KnowledgeBase:
    """
    Static corpus plus ranker.

    Example:
        kb = KnowledgeBase()
        hits = kb.search("water pump seal leak", max_results=5)
    """

    def __init__(self, kb_dir: Path = DEFAULT_KB_DIR) -> None:
        self.kb_dir = Path(kb_dir)
        self._manuals: list[Manual] | None = None
        self._runbooks: list[Runbook] | None = None
        self._incidents: list[Incident] | None = None

    def _load(self, filename: str, model: type[BaseModel]) -> list | None:
        """Validated entries, or None on a read/parse error (the next access retries)."""
        path = self.kb_dir / filename
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return [model.model_validate(item) for item in raw]
        except (OSError, json.JSONDecodeError, ValidationError, TypeError) as exc:
            logger.error("error loading %s: %s", path, exc)
            return None

    @property
    def manuals(self) -> list[Manual]:
        if self._manuals is None:
            self._manuals = self._load("manuals.json", Manual)
        return self._manuals or []

    @property
    def runbooks(self) -> list[Runbook]:
        if self._runbooks is None:
            self._runbooks = self._load("runbooks.json", Runbook)
        return self._runbooks or []

    @property
    def incidents(self) -> list[Incident]:
        if self._incidents is None:
            self._incidents = self._load("incidents.json", Incident)
        return self._incidents or []

    def _scored(self, query: str) -> list[KBResult]:
        """Every entry with a positive score, in corpus order."""
        results: list[KBResult] = []

        def add(entry_id: str, title: str | None, primary: str | None, source: KBSource, score: int) -> None:
            if score > 0:
                results.append(
                    KBResult(id=entry_id, title=title or "Untitled", snippet=_snippet(primary), source=source, score=score)
                )

        for m in self.manuals:
            score = (
                score_text(m.title, query)
                + score_text(m.equipment, query)
                + score_text(m.content, query)
                + score_keywords(m.keywords, query)
            )
            add(m.id, m.title, m.content, "manual", score)

        for r in self.runbooks:
            score = (
                score_text(r.title, query)
                + score_text(r.procedure, query)
                + score_text(" ".join(r.equipment), query)
                + score_keywords(r.keywords, query)
            )
            add(r.id, r.title, r.procedure, "runbook", score)

        for i in self.incidents:
            score = (
                score_text(i.title, query)
                + score_text(i.problem, query)
                + score_text(i.resolution, query)
                + score_text(i.equipmentType, query)
                + score_keywords(i.keywords, query)
            )
            add(i.id, i.title, i.resolution, "incident", score)

        return results

    def search(self, query: str, max_results: int = 10) -> list[KBResult]:
        """Ranked hits for `query`, best first. Zero-score entries never appear."""
        if not query or not query.strip() or max_results <= 0:
            return []

        seen: set[tuple[str, str]] = set()
        unique: list[KBResult] = []
        # sorted() is stable, so equal scores keep corpus order.
        for result in sorted(self._scored(query), key=lambda r: -r.score):
            key = (result.source, result.id)
            if key in seen:
                continue
            seen.add(key)
            unique.append(result)

        return unique[:max_results]
