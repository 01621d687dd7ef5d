"""
End-to-end flow: upload, extract, organize into a batch, then chat about the document.
"""
import unittest

from app.models import TargetRef
from app.services import build_services
from tests.fakes import FakeCompletionClient, extraction_responder, make_settings, make_store


class TestUploadExtractChat(unittest.IsolatedAsyncioTestCase):

    async def test_full_flow(self):
        """Test ingesting, extracting, batching and chatting end to end."""
        client = FakeCompletionClient(
            reply=extraction_responder(
                bibliographic={"title": "X", "authors": ["R. Searcher"], "year": 2022, "doi": ""},
                narrative={"background": "B", "research_question": "Q", "major_findings": "Y", "suggestions": "S"},
                chat="The findings were Y.",
            )
        )
        services = build_services(make_settings(), store=make_store(), client=client)
        services.registry.create(name="Fake", provider="ollama", model_name="fake-model")

        doc = services.pipeline.ingest_text("x.pdf", "Title: X\n\nWe studied things.\n\nFindings: Y")
        doc = await services.pipeline.run_extraction(doc.id, services.registry.resolve())
        assert doc.title == "X"
        assert doc.major_findings == "Y"

        batch = services.batches.create_batch("Lit Review")
        services.batches.add_document(batch.id, doc.id)
        assert [d.id for d in services.batches.list_documents(batch.id)] == [doc.id]

        conversation = services.conversations.open_conversation(TargetRef.document(doc.id))
        stream = await services.conversations.send_message(conversation.id, "what were the findings?")
        chunks = [chunk async for chunk in stream]

        assert "".join(chunks) == "The findings were Y."
        turns = services.conversations.history(conversation.id)
        assert [(t.role, t.content) for t in turns] == [
            ("user", "what were the findings?"),
            ("assistant", "The findings were Y."),
        ]


if __name__ == "__main__":
    unittest.main()
