from stageflow.knowledge.store import KnowledgeStore, ScoredEntry, tokenize

__all__ = ["KnowledgeStore", "ScoredEntry", "tokenize"]
