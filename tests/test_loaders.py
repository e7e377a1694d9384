import numpy as np
import pytest

from cv_rank.errors import ModelUnavailable
from cv_rank.loaders import (
    HashingLoader,
    HashingPipeline,
    LoadStage,
    hash_model_dim,
    load_with_fallback,
    next_stage,
)
from tests.fakes import FakeLoader


def test_primary_success_uses_primary_device() -> None:
    loader = FakeLoader()
    outcome = load_with_fallback(loader.build, "m", "cuda", "cpu")
    assert outcome.stage is LoadStage.PRIMARY
    assert outcome.device == "cuda"
    assert loader.built == [("m", "cuda")]


def test_primary_failure_falls_back_once() -> None:
    loader = FakeLoader(fail_devices={"cuda"})
    outcome = load_with_fallback(loader.build, "m", "cuda", "cpu")
    assert outcome.stage is LoadStage.FALLBACK
    assert outcome.device == "cpu"
    assert loader.built == [("m", "cuda"), ("m", "cpu")]
    assert len(outcome.errors) == 1


def test_both_paths_failing_is_fatal() -> None:
    loader = FakeLoader(fail_devices={"cuda", "cpu"})
    with pytest.raises(ModelUnavailable) as excinfo:
        load_with_fallback(loader.build, "m", "cuda", "cpu", model_id="org/m")
    assert excinfo.value.model_id == "org/m"
    assert "cuda" in excinfo.value.message and "cpu" in excinfo.value.message
    # Exactly one primary and one fallback attempt.
    assert len(loader.built) == 2


def test_same_primary_and_fallback_device_tries_once() -> None:
    loader = FakeLoader(fail_devices={"cpu"})
    with pytest.raises(ModelUnavailable):
        load_with_fallback(loader.build, "m", "cpu", "cpu")
    assert loader.built == [("m", "cpu")]


def test_stage_transitions() -> None:
    assert next_stage(LoadStage.PRIMARY, "cuda", "cpu") is LoadStage.FALLBACK
    assert next_stage(LoadStage.FALLBACK, "cuda", "cpu") is LoadStage.FATAL
    assert next_stage(LoadStage.PRIMARY, "cpu", "cpu") is LoadStage.FATAL


def test_hash_model_dim() -> None:
    assert hash_model_dim("hash/64") == 64
    assert hash_model_dim("hash/") == 32
    assert hash_model_dim("something-else") == 32


def test_hashing_pipeline_is_normalized_and_deterministic() -> None:
    pipeline = HashingLoader().build("hash/24", "cpu")
    assert pipeline.dimension == 24
    first = pipeline.embed("Senior Python engineer")
    second = pipeline.embed("senior python ENGINEER")
    assert first.shape == (24,)
    assert first.dtype == np.float32
    assert np.linalg.norm(first) == pytest.approx(1.0, abs=1e-5)
    np.testing.assert_allclose(first, second)


def test_hashing_pipeline_empty_text_is_zero_vector() -> None:
    assert not HashingPipeline(8).embed("   ").any()
