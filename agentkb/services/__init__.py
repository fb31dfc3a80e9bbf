from agentkb.services.genai_client import GenAIClient, resource_id
from agentkb.services.document_store import DocumentStore
from agentkb.services.object_storage import ObjectStorage, folder_label, log_file_move
from agentkb.services.user_store import UserStore, update_document
from agentkb.services.agent_chat import AgentChatService
from agentkb.services.text_extract import extract_text

__all__ = [
    "GenAIClient",
    "resource_id",
    "DocumentStore",
    "ObjectStorage",
    "folder_label",
    "log_file_move",
    "UserStore",
    "update_document",
    "AgentChatService",
    "extract_text",
]
