"""
Ranking engine.

`rank_candidates` scores every candidate against a job description by cosine
similarity of their embeddings. A candidate whose embedding cannot be
computed is dropped from the output instead of failing the batch; a job
embedding failure fails the whole pass. Candidates without text are
skipped.

`JobAnalysis` wraps the ranking pass in the per-job flow
IDLE -> PARSING -> ANALYZING -> COMPLETE, with ERROR on job-level failure.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Union

from .errors import ExtractionError
from .extract import PlainTextExtractor, TextExtractor
from .schemas import FAILED_SCORE, CandidateDocument, RankedResult
from .vector_math import cosine_similarity

logger = logging.getLogger(__name__)

ANALYSIS_FAILED_MESSAGE = (
    "Analysis failed: the embedding model could not run. "
    "Check that this machine supports the selected backend (e.g. CUDA), "
    "or switch to the CPU device."
)


class EmbeddingSource(Protocol):
    async def generate_embedding(self, text: str) -> List[float]:
        ...


async def _score_candidate(
    gateway: EmbeddingSource,
    job_vector: Sequence[float],
    candidate: CandidateDocument,
) -> RankedResult:
    embedding = candidate.embedding
    if not embedding:
        try:
            embedding = await gateway.generate_embedding(candidate.text)
        except Exception as exc:
            logger.error("Failed to analyze %s: %s", candidate.name, exc)
            return RankedResult(candidate_id=candidate.id, name=candidate.name, score=FAILED_SCORE)

    score = cosine_similarity(job_vector, embedding)
    return RankedResult(
        candidate_id=candidate.id,
        name=candidate.name,
        score=score,
        embedding=list(embedding),
    )


async def rank_candidates(
    gateway: EmbeddingSource,
    job_text: str,
    candidates: Sequence[CandidateDocument],
) -> List[RankedResult]:
    """
    Rank `candidates` against `job_text`, best match first.

    The job embedding is always computed fresh. Candidates with a cached
    embedding reuse it; the rest are embedded concurrently. Failed
    candidates and candidates without text are left out; ties keep their
    input order.
    """
    job_vector = await gateway.generate_embedding(job_text)
    return await score_candidates(gateway, job_vector, candidates)


async def score_candidates(
    gateway: EmbeddingSource,
    job_vector: Sequence[float],
    candidates: Sequence[CandidateDocument],
) -> List[RankedResult]:
    """Score `candidates` against an already computed job embedding."""
    batch = [candidate for candidate in candidates if candidate.text.strip()]
    if len(batch) < len(candidates):
        logger.warning("Skipped %d candidate(s) with no text", len(candidates) - len(batch))
    scored = await asyncio.gather(
        *(_score_candidate(gateway, job_vector, candidate) for candidate in batch)
    )
    kept = [result for result in scored if not result.failed]
    if len(kept) < len(scored):
        logger.warning("Dropped %d candidate(s) whose embedding failed", len(scored) - len(kept))
    return sorted(kept, key=lambda result: result.score, reverse=True)


class AnalysisStatus(str, Enum):
    IDLE = "IDLE"
    PARSING = "PARSING"
    ANALYZING = "ANALYZING"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"


@dataclass
class AddReport:
    added: List[CandidateDocument] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def summary(self) -> str:
        text = f"Added {len(self.added)} file(s)."
        if self.failures:
            last_name, last_error = list(self.failures.items())[-1]
            text += (
                f" Failed to read {len(self.failures)} file(s). "
                f"Last error: {last_name}: {last_error}"
            )
        return text


def new_candidate_id() -> str:
    return f"cand-{uuid.uuid4().hex[:12]}"


class JobAnalysis:
    """
    State of ranking one job description against a set of candidates.

    Observers registered with `subscribe` are called with the analysis after
    every state change, including flips of the advisory `loading_model`
    flag.
    """

    def __init__(self, gateway: EmbeddingSource, extractor: Optional[TextExtractor] = None) -> None:
        self._gateway = gateway
        self._extractor = extractor or PlainTextExtractor()
        self._observers: List[Callable[["JobAnalysis"], None]] = []
        self.status = AnalysisStatus.IDLE
        self.loading_model = False
        self.error_message: Optional[str] = None
        self.job: Optional[CandidateDocument] = None
        self.candidates: List[CandidateDocument] = []
        self.results: List[RankedResult] = []

    def subscribe(self, observer: Callable[["JobAnalysis"], None]) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _set(self, **changes) -> None:
        for name, value in changes.items():
            setattr(self, name, value)
        for observer in list(self._observers):
            try:
                observer(self)
            except Exception:
                logger.exception("Analysis observer failed")

    def set_job_text(self, text: str, name: str = "job description") -> None:
        if not text.strip():
            raise ValueError("Job description is empty")
        self.job = CandidateDocument(id=f"job-{uuid.uuid4().hex[:12]}", name=name, text=text)
        self._set(results=[], status=AnalysisStatus.IDLE)

    def load_job(self, path: Union[str, Path]) -> None:
        path = Path(path)
        self._set(status=AnalysisStatus.PARSING, error_message=None)
        try:
            text = self._extractor.extract(path)
            self.set_job_text(text, name=path.name)
        except (ExtractionError, ValueError) as exc:
            logger.error("Failed to read job description %s: %s", path, exc)
            self._set(status=AnalysisStatus.ERROR, error_message=f"{path.name}: {exc}")

    def add_candidates(self, paths: Iterable[Union[str, Path]]) -> AddReport:
        """Extract and add candidate files. Empty or unreadable files are skipped."""
        self._set(status=AnalysisStatus.PARSING, error_message=None)
        report = AddReport()
        for path in map(Path, paths):
            try:
                text = self._extractor.extract(path)
            except ExtractionError as exc:
                logger.error("Failed to read %s: %s", path, exc)
                report.failures[path.name] = str(exc)
                continue
            if not text.strip():
                logger.warning("Skipping empty file: %s", path.name)
                report.failures[path.name] = "appears to be empty or an image-only document"
                continue
            report.added.append(CandidateDocument(id=new_candidate_id(), name=path.name, text=text))

        changes = {"status": AnalysisStatus.IDLE}
        if report.added:
            changes["candidates"] = self.candidates + report.added
            changes["results"] = []
        if report.failures:
            changes["error_message"] = report.summary
        self._set(**changes)
        return report

    def add_candidate_text(self, name: str, text: str) -> CandidateDocument:
        if not text.strip():
            raise ValueError(f"Candidate {name} has no text")
        candidate = CandidateDocument(id=new_candidate_id(), name=name, text=text)
        self._set(candidates=self.candidates + [candidate], results=[])
        return candidate

    def remove_candidate(self, candidate_id: str) -> None:
        self._set(
            candidates=[c for c in self.candidates if c.id != candidate_id],
            results=[r for r in self.results if r.candidate_id != candidate_id],
        )

    def clear_embeddings(self) -> None:
        """Forget cached candidate embeddings, e.g. after switching models."""
        for candidate in self.candidates:
            candidate.embedding = None

    async def run(self) -> List[RankedResult]:
        if self.job is None or not self.candidates:
            return []

        self._set(status=AnalysisStatus.ANALYZING, error_message=None, loading_model=True)
        try:
            # The job embedding also waits out the model load.
            job_vector = await self._gateway.generate_embedding(self.job.text)
            self._set(loading_model=False)
            results = await score_candidates(self._gateway, job_vector, self.candidates)
        except Exception as exc:
            logger.error("Analysis failed: %s", exc)
            self._set(
                loading_model=False,
                status=AnalysisStatus.ERROR,
                error_message=ANALYSIS_FAILED_MESSAGE,
            )
            raise

        cached = {r.candidate_id: r.embedding for r in results}
        for candidate in self.candidates:
            if candidate.id in cached:
                candidate.embedding = cached[candidate.id]
        self._set(results=results, status=AnalysisStatus.COMPLETE)
        return results

