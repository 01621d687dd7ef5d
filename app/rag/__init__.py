"""
Grounded chat module: context assembly, model selection and streaming answers.
"""
from .context_assembler import ContextAssembler
from .conversation_engine import AnswerStream, ConversationEngine
from .generation import CompletionClient, CompletionRouter
from .model_registry import ModelRegistry

__all__ = ['AnswerStream', 'CompletionClient', 'CompletionRouter', 'ContextAssembler', 'ConversationEngine', 'ModelRegistry']
