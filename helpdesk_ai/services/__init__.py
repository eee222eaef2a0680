"""
Core Services

- LLM Service: Google Gemini completion adapter
- Embedding Service: sentence-transformer embeddings
- Vector Index: in-memory and Elasticsearch article indexes
- Data Store: conversation, routing and draft records
- Job Queue: durable classification/draft work queue
- Notification Service: best-effort event publishing
"""
