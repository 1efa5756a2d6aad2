"""
Tests for text similarity backends.

Embedding tests use a small in-process encoder that maps keywords onto
concept axes, so paraphrases share a direction the way sentence
embeddings do.
"""

import json
import re

import numpy as np
import pytest

from agentic_workspace.config import MemoryConfig
from agentic_workspace.errors import ConfigurationError
from agentic_workspace.memory import MemoryStore
from agentic_workspace.promotion import FactDraft, merge_facts
from agentic_workspace.similarity import (
    EmbeddingSimilarity,
    LexicalSimilarity,
    build_similarity,
)

from conftest import make_llm, record


CONCEPTS = {
    "sign": 0, "login": 0, "войти": 0,
    "button": 1, "control": 1, "selector": 1, "кнопка": 1,
    "cart": 2, "checkout": 2,
    "weather": 3,
}

SIGN_IN = "Sign-in button is #login"
PARAPHRASE = "The login control's selector is #login"


class ConceptEncoder:
    """Encodes text as counts of known concepts."""

    def __init__(self):
        self.calls = []

    def encode(self, text, convert_to_numpy=True):
        self.calls.append(text)
        vector = np.zeros(len(set(CONCEPTS.values())), dtype=np.float32)
        for word in re.findall(r"\w+", text.lower()):
            if word in CONCEPTS:
                vector[CONCEPTS[word]] += 1.0
        return vector


@pytest.fixture
def embedding():
    return EmbeddingSimilarity(model=ConceptEncoder())


class TestEmbeddingSimilarity:
    """Paraphrases score high even without shared words."""

    def test_paraphrases_are_similar(self, embedding):
        assert embedding.score(SIGN_IN, PARAPHRASE) > 0.85
        assert LexicalSimilarity().score(SIGN_IN, PARAPHRASE) < 0.85

    def test_unrelated_texts(self, embedding):
        assert embedding.score("checkout cart", "weather report") == 0.0

    def test_non_latin_text(self, embedding):
        assert embedding.score("Кнопка войти", SIGN_IN) > 0.85

    def test_empty_text_is_not_encoded(self, embedding):
        assert embedding.score("", SIGN_IN) == 0.0
        assert embedding._model.calls == []

    def test_embeddings_are_cached(self):
        encoder = ConceptEncoder()
        similarity = EmbeddingSimilarity(model=encoder, cache_size=2)
        similarity.score(SIGN_IN, PARAPHRASE)
        similarity.score(SIGN_IN, PARAPHRASE)
        assert encoder.calls == [SIGN_IN, PARAPHRASE]

        similarity.score("checkout cart", SIGN_IN)
        similarity.score(PARAPHRASE, SIGN_IN)
        # PARAPHRASE was the least recently used entry and got evicted
        assert encoder.calls[-1] == PARAPHRASE

    def test_unloadable_model_degrades_to_lexical(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise OSError("no network to download the model")

        monkeypatch.setattr("sentence_transformers.SentenceTransformer", refuse)
        similarity = EmbeddingSimilarity(model_name="test/unreachable-model")

        assert similarity.score("checkout button", "Checkout BUTTON") == pytest.approx(1.0)
        assert similarity.embed("anything") is None


class TestBuildSimilarity:

    def test_backends(self):
        chosen = build_similarity(MemoryConfig(similarity_backend="embedding", embedding_model="my/model"))
        assert isinstance(chosen, EmbeddingSimilarity)
        assert chosen.model_name == "my/model"
        assert isinstance(build_similarity(MemoryConfig(similarity_backend="Lexical")), LexicalSimilarity)

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            build_similarity(MemoryConfig(similarity_backend="psychic"))


class TestFactDedup:
    """Fact dedup follows the configured similarity."""

    def test_merge_facts_with_embeddings(self, embedding):
        drafts = [
            (FactDraft(statement=SIGN_IN, confidence=0.5), {1}),
            (FactDraft(statement=PARAPHRASE, confidence=0.5), {2}),
        ]
        changed, created, merged = merge_facts({}, drafts, "ws", 0.85, 0.0, similarity=embedding.score)
        assert (created, merged) == (1, 1)
        fact = next(iter(changed.values()))
        assert fact.statement == SIGN_IN
        assert fact.confidence == pytest.approx(0.75)
        assert fact.source_record_ids == {1, 2}

    def test_promotion_merges_paraphrased_facts(self, workspaces, store, memory_config, clock, workspace, embedding):
        answer = json.dumps({"facts": [
            {"statement": SIGN_IN, "confidence": 0.6},
            {"statement": PARAPHRASE, "confidence": 0.6},
        ]})
        memory = MemoryStore(
            workspaces, store, memory_config, llm=make_llm(answer), clock=clock, similarity=embedding,
        )
        try:
            memory.append_episodic(workspace.id, record(workspace.id, "click", goal="Log in", selector="#login"))
            report = memory.promote(workspace.id)
        finally:
            memory.close()

        assert report.facts_created == 1
        assert report.facts_merged == 1
        assert len(memory.list_facts(workspace.id)) == 1

    def test_query_ranks_by_embedding_relevance(self, workspaces, store, memory_config, clock, workspace, embedding):
        answer = json.dumps({"facts": [
            {"statement": "Checkout cart lives at /cart", "confidence": 0.6},
            {"statement": SIGN_IN, "confidence": 0.6},
        ]})
        memory = MemoryStore(
            workspaces, store, memory_config, llm=make_llm(answer), clock=clock, similarity=embedding,
        )
        try:
            memory.append_episodic(workspace.id, record(workspace.id, "click", goal="Shop", selector="#x"))
            memory.promote(workspace.id)
            ranked = memory.query_semantic(workspace.id, "where is the login control")
        finally:
            memory.close()

        assert ranked[0].fact.statement == SIGN_IN
