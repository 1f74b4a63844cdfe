import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep tests independent of the developer's shell and .env."""
    for name in (
        "REALTY_PUBLIC_MODE",
        "REALTY_TRUST_EASY_AUTH",
        "WEBSITE_SITE_NAME",
        "AUTH_JWKS_URL",
        "AUTH_AUDIENCE",
        "AUTH_ISSUER",
        "REALTY_EXTRA_ALLOWED_EXTENSIONS",
        "REALTY_MAX_UPLOAD_BYTES",
        "AZURE_FUNCTION_URL",
        "REALTY_PERSISTENCE_IMPL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AUTH_JWT_SECRET", "unit-test-secret")


@pytest.fixture
def services():
    """Fresh, isolated service graph wired into the app via dependency overrides."""
    from src.realty_assistant.api.main import app
    from src.realty_assistant.infrastructure.blob_store import InMemoryBlobStore
    from src.realty_assistant.infrastructure.conversation_persistence import InMemoryConversationPersistence
    from src.realty_assistant.infrastructure.document_repository import InMemoryDocumentRepository
    from src.realty_assistant.services.chat_service import ChatService, get_chat_service
    from src.realty_assistant.services.conversation_manager import ConversationManager, get_conversation_manager
    from src.realty_assistant.services.document_context import DocumentContextService
    from src.realty_assistant.services.document_service import DocumentService, get_document_service
    from src.realty_assistant.services.session_coordinator import SessionCoordinator
    from .utils import FakeGenerator

    ns = SimpleNamespace()

    def wire(persistence=None, generator=None):
        ns.persistence = persistence or InMemoryConversationPersistence()
        ns.generator = generator or FakeGenerator()
        ns.repository = InMemoryDocumentRepository()
        ns.blobs = InMemoryBlobStore()
        ns.coordinator = SessionCoordinator(ns.persistence)
        ns.documents = DocumentService(ns.repository, ns.blobs)
        ns.chat = ChatService(ns.coordinator, ns.persistence, ns.generator, DocumentContextService(ns.repository))
        ns.manager = ConversationManager(ns.coordinator, ns.persistence, ns.documents)
        app.dependency_overrides[get_chat_service] = lambda: ns.chat
        app.dependency_overrides[get_conversation_manager] = lambda: ns.manager
        app.dependency_overrides[get_document_service] = lambda: ns.documents
        return ns

    ns.wire = wire
    wire()
    yield ns
    app.dependency_overrides.clear()
