"""
Tests for embedding generation.
"""

import math
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from repoindex.config import EmbeddingConfig
from repoindex.embedder import EmbeddingGenerator, SentenceTransformerEmbedder, build_payload, split_text
from repoindex.hasher import vector_id_for
from repoindex.scanner import FileRecord
from repoindex.utils import EmbeddingError

from conftest import DIM, fake_embed


def generator(embed_fn=fake_embed, **overrides):
    settings = dict(vector_size=DIM, max_chunk_chars=200, chunk_overlap_chars=20, batch_size=2)
    settings.update(overrides)
    return EmbeddingGenerator(embed_fn, EmbeddingConfig(**settings), namespace="repo_demo")


class TestSplitText:
    """Test fixed-window chunking."""

    def test_short_text_is_one_chunk(self):
        assert split_text("abc", 10, 2) == ["abc"]

    def test_windows_overlap(self):
        chunks = split_text("abcdefghij", 4, 1)

        assert chunks == ["abcd", "defg", "ghij"]

    def test_covers_whole_text(self):
        text = "x" * 1000 + "END"

        chunks = split_text(text, 300, 50)

        assert chunks[-1].endswith("END")
        assert all(len(c) <= 300 for c in chunks)


class TestEmbeddingGenerator:
    """Test per-file embedding."""

    def test_embeds_one_file(self):
        rec = FileRecord.build("src/a.py", b"a = 1\n")

        vector = generator().embed(rec)

        assert vector.identifier == "src/a.py"
        assert vector.vector_id == vector_id_for("repo_demo", "src/a.py", rec.fingerprint)
        assert len(vector.vector) == DIM
        assert math.isclose(sum(v * v for v in vector.vector), 1.0, rel_tol=1e-9)

    def test_header_and_bom(self):
        rec = FileRecord.build("a.py", b"\xef\xbb\xbfprint(1)\n")

        text = generator().document_text(rec)

        assert text.startswith("File: a.py\nLanguage: Python\n")
        assert text.endswith("\nprint(1)\n")
        assert "\ufeff" not in text

    def test_unsupported_encoding(self):
        rec = FileRecord.build("a.py", b"caf\xe9\n")

        with pytest.raises(EmbeddingError, match="unsupported encoding") as excinfo:
            generator().embed(rec)
        assert excinfo.value.identifier == "a.py"

    def test_long_file_is_chunked_and_batched(self):
        calls = []

        def recording_embed(texts):
            calls.append(len(texts))
            return fake_embed(texts)

        rec = FileRecord.build("big.py", ("line = 1\n" * 100).encode())
        vector = generator(recording_embed).embed(rec)

        assert sum(calls) > 2
        assert max(calls) <= 2
        assert len(vector.vector) == DIM

    def test_mean_of_chunks(self):
        vectors = iter([[1.0] + [0.0] * (DIM - 1), [0.0, 1.0] + [0.0] * (DIM - 2)])

        def two_axes(texts):
            return [next(vectors) for _ in texts]

        rec = FileRecord.build("a.txt", b"x" * 250)
        vector = generator(two_axes, batch_size=1).embed(rec).vector

        assert vector[0] == pytest.approx(1 / math.sqrt(2))
        assert vector[1] == pytest.approx(1 / math.sqrt(2))

    def test_without_normalization(self):
        rec = FileRecord.build("a.py", b"a")

        vector = generator(lambda texts: [[2.0] * DIM for _ in texts], normalize=False).embed(rec)

        assert vector.vector == [2.0] * DIM

    @pytest.mark.parametrize("bad_output, message", [
        ([[1.0, 2.0]], "dimension"),
        ([[float("nan")] * DIM], "non-finite"),
        ([[0.0] * DIM], "zero norm"),
        ([], "returned 0 vectors"),
    ])
    def test_invalid_backend_output(self, bad_output, message):
        rec = FileRecord.build("a.py", b"a")

        with pytest.raises(EmbeddingError, match=message):
            generator(lambda texts: bad_output).embed(rec)

    def test_backend_exception_is_wrapped(self):
        def broken(texts):
            raise RuntimeError("CUDA out of memory")

        with pytest.raises(EmbeddingError, match="CUDA out of memory"):
            generator(broken).embed(FileRecord.build("a.py", b"a"))


class TestPayload:
    """Test vector payloads."""

    def test_payload_fields(self):
        rec = FileRecord.build("a.rs", b"fn main() {}\n")
        vector = generator().embed(rec)

        payload = build_payload(rec, vector.indexed_at)

        assert payload == vector.payload
        assert payload["identifier"] == "a.rs"
        assert payload["language"] == "Rust"
        assert payload["fingerprint"] == rec.fingerprint.hex
        assert payload["metrics"]["code"] == 1
        assert payload["indexed_at"].endswith("+00:00")
        assert set(payload) >= {"size_sentiment", "loc_sentiment", "frequency_sentiment"}


class TestSentenceTransformerEmbedder:
    """Test the default backend without loading a real model."""

    def test_calls_share_one_model_serially(self):
        active, peak = [], []

        class SlowModel:
            def encode(self, texts, normalize_embeddings, show_progress_bar):
                active.append(1)
                peak.append(len(active))
                time.sleep(0.01)
                active.pop()
                return np.ones((len(texts), DIM))

        backend = SentenceTransformerEmbedder()
        backend._model = SlowModel()

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(backend, [["a"], ["b", "c"], ["d"], ["e"]]))

        assert [len(r) for r in results] == [1, 2, 1, 1]
        assert max(peak) == 1

    def test_empty_input_skips_model(self):
        backend = SentenceTransformerEmbedder()

        assert backend([]) == []
        assert backend._model is None
