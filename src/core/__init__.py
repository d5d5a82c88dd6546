"""
Core document RAG system.

Modules:
- background: Redis-backed job queue, dramatiq broker and worker entry point
- orchestration: Stage results, job runner and drain actors
- ingestion: Extraction, chunking, embedding and indexing stages
- query: Retrieval-augmented answering
"""
