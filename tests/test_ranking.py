import asyncio
import math
from pathlib import Path
from typing import Optional

import pytest

from cv_rank.errors import DimensionMismatch, EmbeddingFailed, ModelUnavailable
from cv_rank.ranking import AnalysisStatus, JobAnalysis, rank_candidates
from cv_rank.schemas import CandidateDocument
from tests.fakes import FakeGateway

JOB = [1.0, 0.0]


def _with_cosine(score: float):
    """Unit vector whose cosine similarity to JOB is `score`."""
    return [score, math.sqrt(1.0 - score * score)]


def _candidate(cid: str, text: Optional[str] = None, embedding=None) -> CandidateDocument:
    return CandidateDocument(id=cid, name=f"{cid}.txt", text=text or f"text of {cid}", embedding=embedding)


def test_results_sorted_by_descending_score() -> None:
    gateway = FakeGateway(
        {
            "job": JOB,
            "text of C3": _with_cosine(0.2),
            "text of C1": _with_cosine(0.9),
            "text of C2": _with_cosine(0.5),
        }
    )
    candidates = [_candidate("C3"), _candidate("C1"), _candidate("C2")]
    results = asyncio.run(rank_candidates(gateway, "job", candidates))
    assert [r.candidate_id for r in results] == ["C1", "C2", "C3"]
    assert results[0].score == pytest.approx(0.9)
    assert results[0].embedding == _with_cosine(0.9)


def test_failed_candidate_is_dropped_not_fatal() -> None:
    vectors = {"job": JOB}
    candidates = []
    for i in range(1, 6):
        cand = _candidate(f"C{i}")
        vectors[cand.text] = _with_cosine(i / 10)
        candidates.append(cand)
    gateway = FakeGateway(vectors, failing={"text of C3"})

    results = asyncio.run(rank_candidates(gateway, "job", candidates))
    assert len(results) == 4
    assert "C3" not in {r.candidate_id for r in results}
    assert all(r.score != -1 for r in results)


def test_candidate_failing_with_any_error_is_dropped_not_fatal() -> None:
    vectors = {"job": JOB}
    candidates = []
    for i in range(1, 6):
        cand = _candidate(f"C{i}")
        vectors[cand.text] = _with_cosine(i / 10)
        candidates.append(cand)
    gateway = FakeGateway(
        vectors,
        errors={
            "text of C3": ModelUnavailable("m", "switched mid-batch"),
        },
    )

    results = asyncio.run(rank_candidates(gateway, "job", candidates))
    assert [r.candidate_id for r in results] == ["C5", "C4", "C2", "C1"]


def test_candidates_without_text_are_not_embedded() -> None:
    gateway = FakeGateway({"job": JOB, "text of C1": _with_cosine(0.6)})
    candidates = [
        _candidate("C1"),
        CandidateDocument(id="blank", name="blank.txt", text="   \n"),
    ]
    results = asyncio.run(rank_candidates(gateway, "job", candidates))
    assert [r.candidate_id for r in results] == ["C1"]
    assert gateway.calls == ["job", "text of C1"]


def test_ties_keep_input_order() -> None:
    gateway = FakeGateway({"job": JOB, "same": _with_cosine(0.5), "better": _with_cosine(0.7)})
    candidates = [
        _candidate("A", "same"),
        _candidate("B", "same"),
        _candidate("C", "better"),
        _candidate("D", "same"),
    ]
    results = asyncio.run(rank_candidates(gateway, "job", candidates))
    assert [r.candidate_id for r in results] == ["C", "A", "B", "D"]


def test_cached_embedding_is_reused_and_job_always_recomputed() -> None:
    gateway = FakeGateway({"job": JOB, "text of fresh": _with_cosine(0.3)})
    candidates = [
        _candidate("cached", embedding=_with_cosine(0.8)),
        _candidate("fresh"),
    ]
    asyncio.run(rank_candidates(gateway, "job", candidates))
    asyncio.run(rank_candidates(gateway, "job", candidates))
    assert gateway.calls.count("job") == 2
    assert "text of cached" not in gateway.calls


def test_job_embedding_failure_propagates() -> None:
    gateway = FakeGateway({"text of C1": JOB}, failing={"job"})
    with pytest.raises(EmbeddingFailed):
        asyncio.run(rank_candidates(gateway, "job", [_candidate("C1")]))


def test_stale_cached_embedding_of_wrong_size_fails_loudly() -> None:
    gateway = FakeGateway({"job": JOB})
    with pytest.raises(DimensionMismatch):
        asyncio.run(rank_candidates(gateway, "job", [_candidate("old", embedding=[1.0, 0.0, 0.0])]))


def test_zero_vector_candidate_scores_zero() -> None:
    gateway = FakeGateway({"job": JOB, "text of blank": [0.0, 0.0]})
    (result,) = asyncio.run(rank_candidates(gateway, "job", [_candidate("blank")]))
    assert result.score == 0.0


def test_result_record_is_json_safe() -> None:
    gateway = FakeGateway({"job": JOB, "text of C1": _with_cosine(0.4)})
    (result,) = asyncio.run(rank_candidates(gateway, "job", [_candidate("C1")]))
    record = result.to_record()
    assert record["candidate_id"] == "C1"
    assert record["score"] == pytest.approx(0.4)


def _write(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_analysis_flow_reaches_complete(tmp_path: Path) -> None:
    gateway = FakeGateway(
        {
            "Python backend role": JOB,
            "python dev": _with_cosine(0.9),
            "java dev": _with_cosine(0.1),
        }
    )
    analysis = JobAnalysis(gateway)
    states = []
    analysis.subscribe(lambda a: states.append((a.status, a.loading_model)))

    analysis.load_job(_write(tmp_path, "job.txt", "Python backend role"))
    report = analysis.add_candidates(
        [
            _write(tmp_path, "java.txt", "java dev"),
            _write(tmp_path, "python.md", "python dev"),
            _write(tmp_path, "empty.txt", "   \n"),
            _write(tmp_path, "scan.pdf", "%PDF"),
        ]
    )
    assert [c.name for c in report.added] == ["java.txt", "python.md"]
    assert set(report.failures) == {"empty.txt", "scan.pdf"}
    assert "Failed to read 2 file(s)" in analysis.error_message

    results = asyncio.run(analysis.run())
    assert analysis.status is AnalysisStatus.COMPLETE
    assert [r.name for r in results] == ["python.md", "java.txt"]
    assert all(c.embedding for c in analysis.candidates)
    assert (AnalysisStatus.ANALYZING, True) in states
    assert (AnalysisStatus.ANALYZING, False) in states
    assert states[-1] == (AnalysisStatus.COMPLETE, False)


def test_analysis_job_failure_moves_to_error() -> None:
    gateway = FakeGateway({"cv": JOB}, failing={"job text"})
    analysis = JobAnalysis(gateway)
    analysis.set_job_text("job text")
    analysis.add_candidate_text("cv.txt", "cv")
    with pytest.raises(EmbeddingFailed):
        asyncio.run(analysis.run())
    assert analysis.status is AnalysisStatus.ERROR
    assert not analysis.loading_model
    assert "CUDA" in analysis.error_message


def test_analysis_settles_in_error_on_unexpected_failure() -> None:
    gateway = FakeGateway({"cv": JOB}, errors={"job text": RuntimeError("Gateway is closed")})
    analysis = JobAnalysis(gateway)
    analysis.set_job_text("job text")
    analysis.add_candidate_text("cv.txt", "cv")
    with pytest.raises(RuntimeError):
        asyncio.run(analysis.run())
    assert analysis.status is AnalysisStatus.ERROR
    assert not analysis.loading_model


def test_adding_candidates_clears_results_and_embeddings_can_be_reset() -> None:
    gateway = FakeGateway({"job": JOB, "a": _with_cosine(0.5), "b": _with_cosine(0.6)})
    analysis = JobAnalysis(gateway)
    analysis.set_job_text("job")
    first = analysis.add_candidate_text("a.txt", "a")
    asyncio.run(analysis.run())
    assert analysis.results

    analysis.add_candidate_text("b.txt", "b")
    assert analysis.results == []
    assert first.embedding is not None

    analysis.clear_embeddings()
    assert first.embedding is None

    analysis.remove_candidate(first.id)
    assert [c.name for c in analysis.candidates] == ["b.txt"]


def test_run_without_candidates_is_noop() -> None:
    analysis = JobAnalysis(FakeGateway({}))
    assert asyncio.run(analysis.run()) == []
    assert analysis.status is AnalysisStatus.IDLE


def test_load_job_from_unreadable_file_sets_error(tmp_path: Path) -> None:
    analysis = JobAnalysis(FakeGateway({}))
    analysis.load_job(tmp_path / "missing.txt")
    assert analysis.status is AnalysisStatus.ERROR
    assert "missing.txt" in analysis.error_message
