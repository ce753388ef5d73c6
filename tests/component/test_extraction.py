"""L2 Component Tests: LLM extraction, trigger extraction, manager lifecycle hooks."""

import pytest

from memorybook.config import MemorySettings, Settings
from memorybook.memory.extractor import ExtractionContext, MemoryExtractor
from memorybook.memory.manager import MemoryManager
from memorybook.memory.retrieval import MEMORY_PROMPT_HEADING
from memorybook.memory.types import MemoryEntryType
from tests.fixtures.mock_llm import memories_response

CONVERSATION = [
    {"role": "user", "content": "I just adopted a dog named Rex"},
    {"role": "assistant", "content": "Congratulations! Rex is a great name."},
]


def _manager(tmp_path, mode, llm=None, provider=None):
    settings = Settings(
        storage_dir=tmp_path / "memories",
        memory=MemorySettings(extraction_mode=mode),
    )
    if provider is None:
        settings.vector_search.enabled = False
    return MemoryManager(settings, llm=llm, embedding_provider=provider)


class TestLLMExtraction:
    @pytest.mark.asyncio
    async def test_saves_scaled_memories(self, vector_manager, mock_llm):
        mock_llm.preset(
            memories_response(
                {"content": "User has a dog named Rex", "keywords": ["dog", "Rex"], "importance": 7, "category": "fact"}
            )
        )
        extractor = MemoryExtractor(vector_manager.store, llm=mock_llm)
        book = vector_manager.store.create_memory_book("Alice")

        result = await extractor.auto_extract_memories(
            ExtractionContext(messages=CONVERSATION, character_name="Alice"), book_id=book.id
        )

        assert len(result.saved) == 1
        entry = result.saved[0]
        assert entry.importance == 70
        assert entry.type == MemoryEntryType.AUTO
        assert entry.source == "llm-extraction"
        assert entry.keywords == ["dog", "Rex"]
        assert "I just adopted a dog named Rex" in mock_llm.prompts[0]
        assert vector_manager.indexes.get(book.id).has_embedding(entry.id)

    @pytest.mark.asyncio
    async def test_skips_duplicates(self, vector_manager, mock_llm):
        store = vector_manager.store
        book = store.create_memory_book("Alice")
        await store.add_memory_with_embedding(book.id, "User likes coffee")

        mock_llm.preset(
            memories_response({"content": "User likes coffee"}, {"content": "User has a dog named Rex"})
        )
        extractor = MemoryExtractor(store, llm=mock_llm)
        result = await extractor.auto_extract_memories(
            ExtractionContext(messages=CONVERSATION), book_id=book.id
        )

        assert [m.content for m in result.duplicates] == ["User likes coffee"]
        assert [e.content for e in result.saved] == ["User has a dog named Rex"]
        assert len(store.load_memory_book(book.id).entries) == 2

    @pytest.mark.asyncio
    async def test_no_dedup_without_backend(self, keyword_manager, mock_llm):
        store = keyword_manager.store
        book = store.create_memory_book("Alice")
        store.add_memory(book.id, "User likes coffee")

        mock_llm.preset(memories_response({"content": "User likes coffee"}))
        extractor = MemoryExtractor(store, llm=mock_llm)
        result = await extractor.auto_extract_memories(
            ExtractionContext(messages=CONVERSATION), book_id=book.id
        )

        assert len(result.saved) == 1
        assert result.duplicates == []

    @pytest.mark.asyncio
    async def test_creates_book_from_context(self, keyword_manager, mock_llm):
        mock_llm.preset(memories_response({"content": "User has a dog named Rex"}))
        extractor = MemoryExtractor(keyword_manager.store, llm=mock_llm)
        result = await extractor.auto_extract_memories(
            ExtractionContext(messages=CONVERSATION, character_name="Alice", character_id="char-7")
        )

        book = keyword_manager.store.storage.find_by_character("char-7")
        assert book is not None
        assert book.name == "Alice"
        assert book.get_entry(result.saved[0].id) is not None

    @pytest.mark.asyncio
    async def test_llm_error_is_empty(self, keyword_manager, mock_llm):
        mock_llm.error = RuntimeError("rate limited")
        book = keyword_manager.store.create_memory_book("Alice")
        extractor = MemoryExtractor(keyword_manager.store, llm=mock_llm)

        result = await extractor.auto_extract_memories(
            ExtractionContext(messages=CONVERSATION), book_id=book.id
        )
        assert result.saved == [] and result.extracted == []

    @pytest.mark.asyncio
    async def test_malformed_output_is_empty(self, keyword_manager, mock_llm):
        mock_llm.preset("I could not find anything worth remembering.")
        book = keyword_manager.store.create_memory_book("Alice")
        extractor = MemoryExtractor(keyword_manager.store, llm=mock_llm)

        result = await extractor.auto_extract_memories(
            ExtractionContext(messages=CONVERSATION), book_id=book.id
        )
        assert result.saved == []
        assert keyword_manager.store.load_memory_book(book.id).entries == []

    @pytest.mark.asyncio
    async def test_plain_callable_llm(self, keyword_manager):
        async def llm(prompt):
            return memories_response({"content": "User is left-handed", "importance": 3})

        book = keyword_manager.store.create_memory_book("Alice")
        extractor = MemoryExtractor(keyword_manager.store, llm=llm)
        result = await extractor.auto_extract_memories(
            ExtractionContext(messages=CONVERSATION), book_id=book.id
        )
        assert [e.importance for e in result.saved] == [30]

    @pytest.mark.asyncio
    async def test_without_llm(self, keyword_manager):
        extractor = MemoryExtractor(keyword_manager.store)
        result = await extractor.auto_extract_memories(ExtractionContext(messages=CONVERSATION))
        assert result.saved == []


class TestTriggeredExtraction:
    def test_categories_and_source(self, keyword_manager):
        store = keyword_manager.store
        book = store.create_memory_book("Alice")
        messages = [
            {"id": "m1", "role": "user", "content": "Remember that I'm allergic to peanuts"},
            {"id": "m2", "role": "assistant", "content": "I'll keep in mind your allergy."},
            {"id": "m3", "role": "user", "content": "thanks"},
            {"id": "m4", "role": "system", "content": "remember the rules"},
        ]

        saved = keyword_manager.extractor.extract_triggered_memories(book.id, messages)

        assert [e.category for e in saved] == ["user-stated", "ai-noted"]
        assert [e.source for e in saved] == ["message:m1", "message:m2"]
        assert all(e.importance == 60 and e.type == MemoryEntryType.AUTO for e in saved)

    def test_rerun_is_idempotent(self, keyword_manager):
        store = keyword_manager.store
        book = store.create_memory_book("Alice")
        messages = [{"role": "user", "content": "Don't forget my birthday is in May"}]

        assert len(keyword_manager.extractor.extract_triggered_memories(book.id, messages)) == 1
        assert keyword_manager.extractor.extract_triggered_memories(book.id, messages) == []
        assert len(store.load_memory_book(book.id).entries) == 1

    def test_unknown_book(self, keyword_manager):
        messages = [{"role": "user", "content": "remember this"}]
        assert keyword_manager.extractor.extract_triggered_memories("mb-missing", messages) == []


class TestManagerHooks:
    @pytest.mark.asyncio
    async def test_mode_off(self, tmp_path, mock_llm):
        mgr = _manager(tmp_path, "off", llm=mock_llm)
        saved = await mgr.on_turn_complete(
            [{"role": "user", "content": "remember I like tea"}], character_id="c1"
        )
        assert saved == []
        assert mock_llm.prompts == []
        assert mgr.store.list_memory_books() == []
        mgr.close()

    @pytest.mark.asyncio
    async def test_trigger_mode_without_llm(self, tmp_path):
        mgr = _manager(tmp_path, "trigger")
        saved = await mgr.on_turn_complete(
            [{"role": "user", "content": "Please remember I like green tea"}],
            character_id="c1",
            character_name="Alice",
        )
        assert [e.content for e in saved] == ["Please remember I like green tea"]
        book = mgr.store.storage.find_by_character("c1")
        assert book.name == "Alice"
        assert mgr.get_extraction_stats(book.id)["total_memories"] == 1
        mgr.close()

    @pytest.mark.asyncio
    async def test_trigger_mode_with_llm(self, tmp_path, mock_llm):
        mock_llm.preset(memories_response({"content": "User likes green tea", "importance": 6}))
        mgr = _manager(tmp_path, "trigger", llm=mock_llm)

        assert await mgr.on_turn_complete([{"role": "user", "content": "hello"}], character_id="c1") == []
        assert mock_llm.prompts == []

        saved = await mgr.on_turn_complete(
            [{"role": "user", "content": "remember I like green tea"}], character_id="c1"
        )
        assert [e.importance for e in saved] == [60]
        assert len(mock_llm.prompts) == 1
        mgr.close()

    @pytest.mark.asyncio
    async def test_auto_mode(self, tmp_path, mock_llm, fake_provider):
        mock_llm.preset(memories_response({"content": "User has a dog named Rex", "importance": 8}))
        mgr = _manager(tmp_path, "auto", llm=mock_llm, provider=fake_provider)

        saved = await mgr.on_turn_complete(CONVERSATION, session_key="s-1")
        assert [e.content for e in saved] == ["User has a dog named Rex"]
        book = mgr.store.storage.find_by_session("s-1")
        assert mgr.indexes.get(book.id).has_embedding(saved[0].id)
        mgr.close()

    @pytest.mark.asyncio
    async def test_extraction_failure_is_swallowed(self, tmp_path, mock_llm, monkeypatch):
        mgr = _manager(tmp_path, "trigger")

        def boom(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(mgr.store, "get_or_create_memory_book", boom)
        saved = await mgr.on_turn_complete([{"role": "user", "content": "remember this"}])
        assert saved == []
        mgr.close()

    @pytest.mark.asyncio
    async def test_build_memory_context(self, vector_manager):
        store = vector_manager.store
        book = store.get_or_create_memory_book(character_id="c1", character_name="Alice")
        store.add_memory(book.id, "User likes coffee", keywords=["coffee"], importance=80)
        store.add_memory(book.id, "User owns a black cat", importance=70)

        text = await vector_manager.build_memory_context("any coffee today?", character_id="c1")

        assert text.startswith(MEMORY_PROMPT_HEADING)
        assert "- User likes coffee" in text
        assert vector_manager.store.get_memory_book_vector_status(book.id)["indexed_entries"] == 2

    @pytest.mark.asyncio
    async def test_build_memory_context_keyword_only(self, keyword_manager):
        store = keyword_manager.store
        book = store.get_or_create_memory_book(session_key="s-1")
        store.add_memory(book.id, "User likes coffee", importance=80)

        text = await keyword_manager.build_memory_context("coffee please", session_key="s-1")
        assert "- User likes coffee" in text

    @pytest.mark.asyncio
    async def test_build_memory_context_empty_book(self, keyword_manager):
        assert await keyword_manager.build_memory_context("hello", character_id="new") == ""

    @pytest.mark.asyncio
    async def test_build_memory_context_failure(self, keyword_manager, monkeypatch):
        def boom(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(keyword_manager.store, "get_or_create_memory_book", boom)
        assert await keyword_manager.build_memory_context("hello", character_id="c1") == ""

    @pytest.mark.asyncio
    async def test_build_memory_context_sync_failure(self, vector_manager, fake_provider):
        store = vector_manager.store
        book = store.get_or_create_memory_book(character_id="c1")
        store.add_memory(book.id, "User likes coffee", importance=80)
        fake_provider.fail = True

        text = await vector_manager.build_memory_context("coffee", character_id="c1")
        assert "- User likes coffee" in text

    def test_status(self, keyword_manager):
        status = keyword_manager.status()
        assert status["enabled"] is True
        assert status["books"] == 0
        assert status["extraction_mode"] == "off"
        assert status["vector_search"]["enabled"] is False
