"""
Unit tests for hybrid retrieval and prompt-context rendering.

Uses the in-memory knowledge store from conftest; lexical scores there
are matched-terms / (matched-terms + 1). No external services required.
"""

import uuid

import pytest

from app.models.schemas import DocumentScope, EntityScope, GeneralScope
from app.services.retrieval import (
    ChunkMatch,
    ContextRetriever,
    DocumentFocus,
    EntityFocus,
    EntityMatch,
    RetrievedContext,
    augment_query,
    build_prompt_context,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def retriever(knowledge_repo, fake_embedder) -> ContextRetriever:
    return ContextRetriever(
        repository=knowledge_repo,
        embedder=fake_embedder,
        vector_weight=0.7,
        lexical_weight=0.3,
    )


@pytest.fixture
def team_graph(knowledge_repo, fake_embedder):
    """Alice works_at Acme, Acme based_in Paris, Bob knows Alice."""
    doc = knowledge_repo.add_document("Team", "Alice works at Acme in Paris.")
    chunk_text = "Alice works at Acme in Paris."
    knowledge_repo.add_chunk(doc, chunk_text, fake_embedder.vector(chunk_text))

    alice = knowledge_repo.add_entity("Alice", "person", "Engineer")
    acme = knowledge_repo.add_entity("Acme", "organization")
    paris = knowledge_repo.add_entity("Paris", "location")
    bob = knowledge_repo.add_entity("Bob", "person")
    knowledge_repo.link(alice, "works_at", acme)
    knowledge_repo.link(acme, "based_in", paris)
    knowledge_repo.link(bob, "knows", alice)
    for entity in (alice, acme, paris):
        knowledge_repo.mention(entity, doc)
    return {"doc": doc, "alice": alice, "acme": acme, "paris": paris, "bob": bob}


# ---------------------------------------------------------------------------
# Chunk ranking
# ---------------------------------------------------------------------------


class TestChunkRanking:
    @pytest.mark.asyncio
    async def test_weighted_merge(self, retriever, knowledge_repo, fake_embedder):
        doc = knowledge_repo.add_document("Rockets", "...")
        text = "rocket engines need thrust"
        knowledge_repo.add_chunk(doc, text, fake_embedder.vector(text))

        context = await retriever.retrieve(None, "rocket thrust", limit=3)

        query_vector = fake_embedder.vector("rocket thrust")
        [vector_hit] = await knowledge_repo.search_chunks_by_vector(None, query_vector)
        [lexical_hit] = await knowledge_repo.search_chunks_by_text(None, "rocket thrust")
        expected = round(0.7 * vector_hit.score + 0.3 * lexical_hit.score, 4)
        assert [c.score for c in context.chunks] == [expected]

    @pytest.mark.asyncio
    async def test_lexical_only_when_embeddings_unavailable(
        self, retriever, knowledge_repo, fake_embedder
    ):
        fake_embedder.unavailable = True
        doc = knowledge_repo.add_document("Rockets", "...")
        knowledge_repo.add_chunk(doc, "rocket engines need thrust")
        knowledge_repo.add_chunk(doc, "nothing relevant here")

        context = await retriever.retrieve(None, "rocket thrust", limit=3)

        assert len(context.chunks) == 1
        assert context.chunks[0].content == "rocket engines need thrust"
        assert context.chunks[0].score == pytest.approx(2 / 3, abs=1e-4)

    @pytest.mark.asyncio
    async def test_truncates_to_limit(self, retriever, knowledge_repo, fake_embedder):
        doc = knowledge_repo.add_document("Notes", "...")
        for i in range(6):
            text = f"solar panel note {i}"
            knowledge_repo.add_chunk(doc, text, fake_embedder.vector(text))

        context = await retriever.retrieve(None, "solar panel", limit=2)

        assert len(context.chunks) == 2
        assert context.chunks[0].score >= context.chunks[1].score

    @pytest.mark.asyncio
    async def test_document_focus_ranks_first(self, retriever, knowledge_repo, fake_embedder):
        fake_embedder.unavailable = True
        other = knowledge_repo.add_document("Engines", "...")
        strong = knowledge_repo.add_chunk(other, "rocket engines need thrust vectoring")
        budget = knowledge_repo.add_document("Budget", "...")
        weak = knowledge_repo.add_chunk(budget, "the rocket budget was approved")

        focus = DocumentFocus(budget.id, "Budget")
        context = await retriever.retrieve(None, "rocket engines thrust", focus=focus)

        assert [c.chunk_id for c in context.chunks] == [weak.id, strong.id]
        assert context.chunks[0].score < context.chunks[1].score

    @pytest.mark.asyncio
    async def test_entity_focus_prefers_mentioning_documents(
        self, retriever, knowledge_repo, fake_embedder, team_graph
    ):
        fake_embedder.unavailable = True
        other = knowledge_repo.add_document("Elsewhere", "...")
        knowledge_repo.add_chunk(other, "Paris hosts many works of art in Paris museums")

        alice = team_graph["alice"]
        focus = EntityFocus(alice.id, alice.name, alice.type, alice.description)
        context = await retriever.retrieve(None, "Paris works art museums", focus=focus)

        assert context.chunks[0].document_id == team_graph["doc"].id


# ---------------------------------------------------------------------------
# Entities and graph narrative
# ---------------------------------------------------------------------------


class TestEntities:
    @pytest.mark.asyncio
    async def test_name_match_scores_one(self, retriever, team_graph):
        context = await retriever.retrieve(None, "Where does Alice work?")

        names = {e.name: e.score for e in context.entities}
        assert names["Alice"] == 1.0

    @pytest.mark.asyncio
    async def test_graph_narrative_includes_neighbours(self, retriever, team_graph):
        context = await retriever.retrieve(None, "Where does Alice work?", limit=1)

        assert context.graph_context.startswith("Knowledge Graph Context:\n")
        lines = context.graph_context.splitlines()[1:]
        assert "Alice --[works_at]--> Acme" in lines
        assert "Bob --[knows]--> Alice" in lines
        # Paris is two hops away
        assert "Acme --[based_in]--> Paris" not in lines

    @pytest.mark.asyncio
    async def test_relationship_between_neighbours_included(
        self, retriever, knowledge_repo, team_graph
    ):
        # Bob and Acme are both neighbours of Alice
        knowledge_repo.link(team_graph["bob"], "visited", team_graph["acme"])

        context = await retriever.retrieve(None, "Alice", limit=1)

        assert "Bob --[visited]--> Acme" in context.graph_context.splitlines()

    @pytest.mark.asyncio
    async def test_focus_entity_always_included(
        self, retriever, knowledge_repo, fake_embedder
    ):
        fake_embedder.unavailable = True
        knowledge_repo.add_entity("Acme", "organization")
        zephyr = knowledge_repo.add_entity("Zephyr", "project", "Internal codename")

        focus = EntityFocus(zephyr.id, zephyr.name, zephyr.type, zephyr.description)
        context = await retriever.retrieve(None, "what about Acme?", limit=1, focus=focus)

        assert [e.name for e in context.entities] == ["Zephyr"]
        assert context.entities[0].score == 1.0

    @pytest.mark.asyncio
    async def test_empty_knowledge_base(self, retriever):
        context = await retriever.retrieve(None, "anything at all")

        assert context.is_empty
        assert build_prompt_context(context) == ""


# ---------------------------------------------------------------------------
# Focus resolution and query augmentation
# ---------------------------------------------------------------------------


class TestFocus:
    @pytest.mark.asyncio
    async def test_resolve_entity_scope(self, retriever, team_graph):
        alice = team_graph["alice"]

        focus = await retriever.resolve_focus(None, EntityScope(entity_id=alice.id))

        assert focus == EntityFocus(alice.id, "Alice", "person", "Engineer")

    @pytest.mark.asyncio
    async def test_resolve_document_scope(self, retriever, knowledge_repo):
        doc = knowledge_repo.add_document("Budget", "...", summary="Q3 numbers")

        focus = await retriever.resolve_focus(None, DocumentScope(document_id=doc.id))

        assert focus == DocumentFocus(doc.id, "Budget", "Q3 numbers")

    @pytest.mark.asyncio
    async def test_resolve_missing_target(self, retriever):
        assert await retriever.resolve_focus(None, EntityScope(entity_id=uuid.uuid4())) is None
        assert await retriever.resolve_focus(None, GeneralScope()) is None

    def test_augment_query(self):
        entity = EntityFocus(uuid.uuid4(), "Alice", "person", "Engineer at Acme")
        document = DocumentFocus(uuid.uuid4(), "Budget", None)

        assert augment_query("where?", None) == "where?"
        assert augment_query("where?", entity) == "where? Alice Engineer at Acme"
        assert augment_query("where?", document) == "where? Budget"

    def test_augment_query_truncates_description(self):
        focus = EntityFocus(uuid.uuid4(), "Alice", "person", "x" * 500)

        augmented = augment_query("q", focus)

        assert augmented == "q Alice " + "x" * 200


# ---------------------------------------------------------------------------
# Prompt context
# ---------------------------------------------------------------------------


class TestBuildPromptContext:
    def test_full_layout(self):
        context = RetrievedContext(
            chunks=[
                ChunkMatch(uuid.uuid4(), uuid.uuid4(), "Team", "Alice works at Acme.", 0.9)
            ],
            entities=[
                EntityMatch(uuid.uuid4(), "Alice", "person", "Engineer", 1.0),
                EntityMatch(uuid.uuid4(), "Acme", "organization", None, 0.8),
            ],
            graph_context="Knowledge Graph Context:\nAlice --[works_at]--> Acme",
        )

        rendered = build_prompt_context(context)

        assert rendered == (
            "## Relevant Content from Knowledge Base:\n\n"
            '### From "Team":\nAlice works at Acme.\n\n'
            "\n## Knowledge Graph Context:\nAlice --[works_at]--> Acme\n\n"
            "\n## Relevant Entities:\n\n"
            "- **Alice** (person): Engineer\n"
            "- **Acme** (organization)"
        )

    def test_chunks_only(self):
        context = RetrievedContext(
            chunks=[ChunkMatch(uuid.uuid4(), uuid.uuid4(), "Doc", "Body", 0.5)]
        )

        rendered = build_prompt_context(context)

        assert rendered.startswith("## Relevant Content from Knowledge Base:")
        assert "Relevant Entities" not in rendered
