"""
Context assembly for grounded chat.

Builds the bounded prompt payload for one exchange:

    [system instruction] + [resolved content] + [recent turns] + [new user turn]

Budget priority when content does not fit:
    1. system instruction and the new user turn (always sent)
    2. structured extracted fields, in full (clipped only as a last resort)
    3. the most recent conversation turns, newest first (older turns dropped first)
    4. raw-text excerpts ranked by overlap with the user's question

The payload never exceeds the budget, and equal inputs give equal payloads.
"""
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
import math
import re

from app.db.models import Document, Paper
from app.db.store import Store
from app.errors import ResolutionError
from app.ingestion.chunker import BudgetMeter, Passage, split_passages
from app.logging_config import get_logger
from app.models import ContextPayload, ModelConfigSnapshot, TargetKind, TargetRef, TurnRecord

logger = get_logger(__name__)

SECTION_SEPARATOR = "\n\n"

BASE_SYSTEM_PROMPT = """<Role Context>
You are a research assistant helping a researcher understand academic papers they have collected.
</Role Context>

<Constraints>
Base your answers on the provided <Context>. When it does not contain the answer, say so plainly.
Refer to papers by title when more than one is in context.
Be concise; use bullet points for lists of findings.
</Constraints>"""

SCOPE_INSTRUCTIONS = {
    TargetKind.DOCUMENT: "The researcher is asking about one uploaded paper, described in <Context>.",
    TargetKind.PAPER: "The researcher is asking about one catalog paper, described in <Context>.",
    TargetKind.BATCH: "The researcher is asking about a batch of papers, summarized one by one in <Context>.",
    TargetKind.QUERY: "No papers are attached to this conversation; answer from general knowledge and the dialogue.",
}

_TERM_RE = re.compile(r"[a-z0-9]+")
STOPWORDS = frozenset(
    "the a an and or of to in on for with what which who whom how why when where is are was were be been "
    "this that these those it its as at by from about into than then there their they them we you your our "
    "do does did can could should would will may might paper study authors author findings".split()
)


@dataclass
class ResolvedTarget:
    """Content a target resolves to before budgeting."""
    kind: TargetKind
    label: str
    field_blocks: List[str] = field(default_factory=list)
    text: str = ""


def _terms(text: str) -> List[str]:
    return [t for t in _TERM_RE.findall(text.lower()) if len(t) > 2 and t not in STOPWORDS]


def score_passage(passage: str, query_terms: Sequence[str]) -> float:
    """Lexical overlap: distinct query terms present, plus a damped frequency bonus."""
    if not query_terms:
        return 0.0
    counts = {}
    for term in _terms(passage):
        counts[term] = counts.get(term, 0) + 1
    score = 0.0
    for term in set(query_terms):
        hits = counts.get(term, 0)
        if hits:
            score += 1.0 + math.log(hits)
    return score


def rank_passages(passages: Sequence[Passage], question: str) -> List[Passage]:
    """Highest score first; ties keep document order."""
    query_terms = _terms(question)
    return sorted(passages, key=lambda p: (-score_passage(p.text, query_terms), p.index))


def document_field_block(doc: Document) -> str:
    lines = [f"Title: {doc.title or doc.filename}"]
    if doc.authors:
        lines.append(f"Authors: {', '.join(doc.authors)}")
    if doc.year:
        lines.append(f"Year: {doc.year}")
    if doc.doi:
        lines.append(f"DOI: {doc.doi}")
    if doc.has_extraction:
        for label, value in (
            ("Background", doc.background),
            ("Research Question", doc.research_question),
            ("Major Findings", doc.major_findings),
            ("Suggestions", doc.suggestions),
        ):
            if value:
                lines.append(f"{label}: {value}")
    else:
        lines.append("(Structured findings have not been extracted for this paper yet.)")
    return "\n".join(lines)


def paper_field_block(paper: Paper) -> str:
    lines = [f"Title: {paper.title}"]
    if paper.authors:
        lines.append(f"Authors: {', '.join(paper.authors)}")
    if paper.year:
        lines.append(f"Year: {paper.year}")
    if paper.venue:
        lines.append(f"Venue: {paper.venue}")
    if paper.doi:
        lines.append(f"DOI: {paper.doi}")
    if paper.abstract:
        lines.append(f"Abstract: {paper.abstract}")
    return "\n".join(lines)


class ContextAssembler:
    def __init__(
        self,
        store: Store,
        default_budget: int = 12000,
        budget_unit: str = "chars",
        history_turns: int = 8,
        excerpt_chars: int = 1200,
        system_prompt: str = BASE_SYSTEM_PROMPT,
    ):
        self.store = store
        self.default_budget = default_budget
        self.meter = BudgetMeter(budget_unit)
        self.history_turns = history_turns
        self.excerpt_chars = excerpt_chars
        self.system_prompt = system_prompt

    def budget_for(self, model_config: Optional[ModelConfigSnapshot]) -> int:
        if model_config is not None and model_config.context_budget:
            return model_config.context_budget
        return self.default_budget

    def resolve(self, target: TargetRef) -> ResolvedTarget:
        """Load the content a target stands for; raises ResolutionError if it is gone."""
        if target.kind == TargetKind.QUERY:
            return ResolvedTarget(TargetKind.QUERY, "ad-hoc query")

        if target.kind == TargetKind.DOCUMENT:
            doc = self.store.get_document(target.target_id)
            if doc is None:
                raise ResolutionError("The document for this conversation no longer exists")
            return ResolvedTarget(
                TargetKind.DOCUMENT,
                doc.title or doc.filename,
                field_blocks=[document_field_block(doc)],
                text=doc.normalized_text or "",
            )

        if target.kind == TargetKind.PAPER:
            paper = self.store.get_paper(target.target_id)
            if paper is None:
                raise ResolutionError("The paper for this conversation no longer exists")
            return ResolvedTarget(TargetKind.PAPER, paper.title, field_blocks=[paper_field_block(paper)])

        batch = self.store.get_batch(target.target_id)
        if batch is None:
            raise ResolutionError("The batch for this conversation no longer exists")
        documents = self.store.list_batch_documents(batch.id)
        blocks = [f"[Paper {i}]\n{document_field_block(doc)}" for i, doc in enumerate(documents, 1)]
        if not blocks:
            blocks = [f"The batch '{batch.name}' has no papers yet."]
        # Batches carry extracted fields only, never raw text
        return ResolvedTarget(TargetKind.BATCH, batch.name, field_blocks=blocks)

    def _fit_fields(self, blocks: List[str], remaining: int) -> Tuple[List[str], int, bool]:
        kept, used, truncated = [], 0, False
        for block in blocks:
            cost = self.meter.measure(block) + (self.meter.measure(SECTION_SEPARATOR) if kept else 0)
            if used + cost <= remaining:
                kept.append(block)
                used += cost
                continue
            truncated = True
            room = remaining - used - (self.meter.measure(SECTION_SEPARATOR) if kept else 0)
            if room > 0:
                clipped = self.meter.clip(block, room)
                if clipped:
                    kept.append(clipped)
                    used += self.meter.measure(SECTION_SEPARATOR) if len(kept) > 1 else 0
                    used += self.meter.measure(clipped)
            break
        return kept, used, truncated

    def _fit_history(self, history: Sequence[TurnRecord], remaining: int) -> Tuple[List[TurnRecord], int, bool]:
        recent = list(history)[-self.history_turns:] if self.history_turns > 0 else []
        kept: List[TurnRecord] = []
        used = 0
        for turn in reversed(recent):
            cost = self.meter.measure(turn.content)
            if used + cost > remaining:
                break
            kept.append(turn)
            used += cost
        kept.reverse()
        # An assistant turn cannot open the history window
        while kept and kept[0].role != "user":
            used -= self.meter.measure(kept[0].content)
            kept.pop(0)
        return kept, used, len(kept) < len(history)

    def _fit_excerpts(self, text: str, question: str, remaining: int) -> Tuple[List[Passage], bool]:
        passages = split_passages(text, self.excerpt_chars)
        if not passages:
            return [], False
        header_cost = self.meter.measure(SECTION_SEPARATOR + "<Excerpts>\n\n</Excerpts>")
        budget = remaining - header_cost
        chosen: List[Passage] = []
        used = 0
        for passage in rank_passages(passages, question):
            cost = self.meter.measure(self._format_excerpt(passage)) + (self.meter.measure("\n\n") if chosen else 0)
            if used + cost <= budget:
                chosen.append(passage)
                used += cost
        chosen.sort(key=lambda p: p.index)
        return chosen, len(chosen) < len(passages)

    @staticmethod
    def _format_excerpt(passage: Passage) -> str:
        return f"[Excerpt {passage.index + 1}]\n{passage.text}"

    def _render_content(self, resolved: ResolvedTarget, fields: List[str], excerpts: List[Passage]) -> str:
        if resolved.kind == TargetKind.QUERY:
            return ""
        content = "<Context>\n" + SECTION_SEPARATOR.join(fields) + "\n</Context>"
        if excerpts:
            body = "\n\n".join(self._format_excerpt(p) for p in excerpts)
            content += SECTION_SEPARATOR + "<Excerpts>\n" + body + "\n</Excerpts>"
        return content

    def _size(self, payload: ContextPayload) -> int:
        return sum(self.meter.measure(m["content"]) for m in payload.to_messages())

    def assemble(
        self,
        target: TargetRef,
        history: Sequence[TurnRecord],
        user_message: str,
        model_config: Optional[ModelConfigSnapshot] = None,
        budget: Optional[int] = None,
    ) -> ContextPayload:
        """
        Build the payload for the next request.

        Args:
            target: What the conversation is about
            history: Completed turns, oldest first (without the new user turn)
            user_message: The new user turn
            model_config: Supplies a per-model budget when `budget` is not given
            budget: Explicit ceiling in the configured unit

        Raises:
            ResolutionError: target no longer exists
        """
        budget = budget if budget is not None else self.budget_for(model_config)
        resolved = self.resolve(target)
        truncated = False

        system = f"{self.system_prompt}\n\n{SCOPE_INSTRUCTIONS[resolved.kind]}"
        if self.meter.measure(system) + self.meter.measure(user_message) > budget:
            truncated = True
            user_message = self.meter.clip(user_message, max(budget - self.meter.measure(system), budget // 2))
            system = self.meter.clip(system, budget - self.meter.measure(user_message))
        remaining = budget - self.meter.measure(system) - self.meter.measure(user_message)

        fields: List[str] = []
        if resolved.kind != TargetKind.QUERY:
            wrapper_cost = self.meter.measure("<Context>\n\n</Context>")
            fields, used, fields_cut = self._fit_fields(resolved.field_blocks, remaining - wrapper_cost)
            truncated = truncated or fields_cut
            if fields:
                remaining -= used + wrapper_cost

        turns, used, history_cut = self._fit_history(history, remaining)
        remaining -= used
        truncated = truncated or history_cut

        excerpts: List[Passage] = []
        if resolved.text and fields:
            excerpts, excerpts_cut = self._fit_excerpts(resolved.text, user_message, remaining)
            truncated = truncated or excerpts_cut

        payload = ContextPayload(
            system=system,
            content=self._render_content(resolved, fields, excerpts) if fields else "",
            history=turns,
            user_message=user_message,
            budget=budget,
        )

        # Token counts are not strictly additive; trim until the measured size fits
        payload.size = self._size(payload)
        while payload.size > budget:
            truncated = True
            if excerpts:
                excerpts.pop()
                payload.content = self._render_content(resolved, fields, excerpts)
            elif payload.history:
                payload.history.pop(0)
            elif payload.content:
                over = payload.size - budget
                payload.content = self.meter.clip(payload.content, self.meter.measure(payload.content) - over)
            else:
                payload.user_message = self.meter.clip(payload.user_message, budget - self.meter.measure(system))
            payload.size = self._size(payload)

        payload.truncated = truncated
        logger.debug(
            f"Assembled context for {resolved.kind.value} '{resolved.label}': "
            f"size={payload.size}/{budget} {self.meter.unit}, turns={len(payload.history)}, "
            f"excerpts={len(excerpts)}, truncated={truncated}"
        )
        return payload
