from elasticsearch import AsyncElasticsearch, NotFoundError
from typing import Dict, List, Optional, Protocol, Tuple
from datetime import datetime
from dataclasses import dataclass
import logging
import threading

import numpy as np

from config.settings import settings
from helpdesk_ai.models.schemas import KnowledgeArticle

logger = logging.getLogger(__name__)


@dataclass
class IndexedArticle:
    article: KnowledgeArticle
    embedding: List[float]
    content_hash: str


class VectorIndex(Protocol):
    """Storage for knowledge articles plus their embeddings."""

    async def upsert(self, article: KnowledgeArticle, embedding: List[float],
                     content_hash: str) -> None: ...

    async def update_metadata(self, article: KnowledgeArticle) -> None: ...

    async def get(self, article_id: str) -> Optional[IndexedArticle]: ...

    async def delete(self, article_id: str) -> bool: ...

    async def list_articles(self, account_id: str) -> List[KnowledgeArticle]: ...

    async def search(self, query_embedding: List[float], account_id: str,
                     limit: int) -> List[Tuple[KnowledgeArticle, float]]: ...

    async def increment_feedback(self, article_id: str,
                                 helpful: bool) -> None: ...


class InMemoryVectorIndex:
    """Brute-force cosine search over numpy arrays"""

    def __init__(self):
        self._entries: Dict[str, IndexedArticle] = {}
        self._lock = threading.Lock()

    async def upsert(self, article: KnowledgeArticle, embedding: List[float],
                     content_hash: str) -> None:
        with self._lock:
            self._entries[article.id] = IndexedArticle(
                article=article.model_copy(deep=True),
                embedding=list(embedding),
                content_hash=content_hash
            )

    async def update_metadata(self, article: KnowledgeArticle) -> None:
        with self._lock:
            entry = self._entries.get(article.id)
            if entry is None:
                raise KeyError(article.id)
            entry.article = article.model_copy(deep=True)

    async def get(self, article_id: str) -> Optional[IndexedArticle]:
        with self._lock:
            entry = self._entries.get(article_id)
            if entry is None:
                return None
            return IndexedArticle(
                article=entry.article.model_copy(deep=True),
                embedding=list(entry.embedding),
                content_hash=entry.content_hash
            )

    async def delete(self, article_id: str) -> bool:
        with self._lock:
            return self._entries.pop(article_id, None) is not None

    async def list_articles(self, account_id: str) -> List[KnowledgeArticle]:
        with self._lock:
            articles = [
                e.article.model_copy(deep=True)
                for e in self._entries.values()
                if e.article.account_id == account_id
            ]
        return sorted(articles, key=lambda a: a.id)

    async def search(self, query_embedding: List[float], account_id: str,
                     limit: int) -> List[Tuple[KnowledgeArticle, float]]:
        with self._lock:
            candidates = [
                e for e in self._entries.values()
                if e.article.account_id == account_id
                and e.article.published
                and e.embedding
            ]
            if not candidates:
                return []
            matrix = np.asarray([e.embedding for e in candidates],
                                dtype=np.float64)
            articles = [e.article.model_copy(deep=True) for e in candidates]

        query = np.asarray(query_embedding, dtype=np.float64)
        query_norm = np.linalg.norm(query)
        row_norms = np.linalg.norm(matrix, axis=1)
        denom = row_norms * query_norm
        scores = np.divide(matrix @ query, denom,
                           out=np.zeros(len(articles)), where=denom != 0)

        ranked = sorted(
            zip(articles, (float(s) for s in scores)),
            key=lambda pair: (-pair[1], pair[0].id)
        )
        return ranked[:limit]

    async def increment_feedback(self, article_id: str,
                                 helpful: bool) -> None:
        with self._lock:
            entry = self._entries.get(article_id)
            if entry is None:
                return
            if helpful:
                entry.article.helpful_count += 1
            else:
                entry.article.not_helpful_count += 1


class ElasticsearchVectorIndex:
    """Dense-vector index on Elasticsearch with exact cosine scoring"""

    def __init__(self,
                 es_url: Optional[str] = None,
                 index_name: Optional[str] = None,
                 embedding_dim: Optional[int] = None):
        self.es_url = es_url or settings.ELASTICSEARCH_URL
        self.index_name = index_name or settings.ELASTICSEARCH_INDEX
        self.embedding_dim = embedding_dim or settings.EMBEDDING_DIMENSION
        self.client = AsyncElasticsearch(self.es_url)

    async def initialize(self) -> bool:
        """Check the connection and create the index if it is missing"""
        try:
            info = await self.client.info()
            logger.info("Connected to Elasticsearch %s",
                        info["version"]["number"])
            await self.create_index()
            return True
        except Exception:
            logger.exception("Error connecting to Elasticsearch at %s",
                             self.es_url)
            return False

    async def create_index(self) -> None:
        """Create the knowledge base index with vector search capabilities"""
        mappings = {
            "properties": {
                "id": {"type": "keyword"},
                "account_id": {"type": "keyword"},
                "title": {"type": "text", "analyzer": "standard"},
                "content": {"type": "text", "analyzer": "standard"},
                "category": {"type": "keyword"},
                "tags": {"type": "keyword"},
                "published": {"type": "boolean"},
                "helpful_count": {"type": "integer"},
                "not_helpful_count": {"type": "integer"},
                "created_at": {"type": "date"},
                "updated_at": {"type": "date"},
                "content_hash": {"type": "keyword"},
                "embedding": {
                    "type": "dense_vector",
                    "dims": self.embedding_dim,
                    "index": True,
                    "similarity": "cosine"
                }
            }
        }
        if await self.client.indices.exists(index=self.index_name):
            logger.info("Index %s already exists", self.index_name)
            return
        await self.client.indices.create(
            index=self.index_name,
            mappings=mappings,
            settings={"number_of_shards": 1, "number_of_replicas": 0}
        )
        logger.info("Created index: %s", self.index_name)

    def _article_doc(self, article: KnowledgeArticle) -> dict:
        return {
            "id": article.id,
            "account_id": article.account_id,
            "title": article.title,
            "content": article.content,
            "category": article.category.value if article.category else None,
            "tags": article.tags,
            "published": article.published,
            "helpful_count": article.helpful_count,
            "not_helpful_count": article.not_helpful_count,
            "created_at": article.created_at.isoformat(),
            "updated_at": article.updated_at.isoformat() if article.updated_at else None,
        }

    def _article_from_source(self, source: dict) -> KnowledgeArticle:
        return KnowledgeArticle(
            id=source["id"],
            account_id=source["account_id"],
            title=source["title"],
            content=source["content"],
            category=source.get("category"),
            tags=source.get("tags", []),
            published=source.get("published", True),
            helpful_count=source.get("helpful_count", 0),
            not_helpful_count=source.get("not_helpful_count", 0),
            created_at=datetime.fromisoformat(source["created_at"]),
            updated_at=datetime.fromisoformat(source["updated_at"])
            if source.get("updated_at") else None
        )

    async def upsert(self, article: KnowledgeArticle, embedding: List[float],
                     content_hash: str) -> None:
        doc = self._article_doc(article)
        doc["embedding"] = embedding
        doc["content_hash"] = content_hash
        await self.client.index(
            index=self.index_name,
            id=article.id,
            document=doc,
            refresh="wait_for"
        )

    async def update_metadata(self, article: KnowledgeArticle) -> None:
        await self.client.update(
            index=self.index_name,
            id=article.id,
            doc=self._article_doc(article),
            refresh="wait_for"
        )

    async def get(self, article_id: str) -> Optional[IndexedArticle]:
        try:
            response = await self.client.get(index=self.index_name,
                                             id=article_id)
        except NotFoundError:
            return None
        source = response["_source"]
        return IndexedArticle(
            article=self._article_from_source(source),
            embedding=source.get("embedding") or [],
            content_hash=source.get("content_hash", "")
        )

    async def delete(self, article_id: str) -> bool:
        try:
            await self.client.delete(index=self.index_name, id=article_id,
                                     refresh="wait_for")
            return True
        except NotFoundError:
            return False

    async def list_articles(self, account_id: str) -> List[KnowledgeArticle]:
        response = await self.client.search(
            index=self.index_name,
            query={"term": {"account_id": account_id}},
            sort=[{"id": "asc"}],
            size=1000,
            source_excludes=["embedding"]
        )
        return [self._article_from_source(hit["_source"])
                for hit in response["hits"]["hits"]]

    async def search(self, query_embedding: List[float], account_id: str,
                     limit: int) -> List[Tuple[KnowledgeArticle, float]]:
        """Exact cosine search restricted to the tenant's published articles"""
        response = await self.client.search(
            index=self.index_name,
            query={
                "script_score": {
                    "query": {
                        "bool": {
                            "filter": [
                                {"term": {"account_id": account_id}},
                                {"term": {"published": True}},
                                {"exists": {"field": "embedding"}}
                            ]
                        }
                    },
                    "script": {
                        # Shifted by +1 because scores must be non-negative
                        "source": "cosineSimilarity(params.query_vector, 'embedding') + 1.0",
                        "params": {"query_vector": query_embedding}
                    }
                }
            },
            sort=[{"_score": "desc"}, {"id": "asc"}],
            track_scores=True,
            size=limit,
            source_excludes=["embedding"]
        )

        results = []
        for hit in response["hits"]["hits"]:
            article = self._article_from_source(hit["_source"])
            results.append((article, float(hit["_score"]) - 1.0))
        return results

    async def increment_feedback(self, article_id: str,
                                 helpful: bool) -> None:
        field = "helpful_count" if helpful else "not_helpful_count"
        try:
            await self.client.update(
                index=self.index_name,
                id=article_id,
                script={"source": f"ctx._source.{field} += 1"}
            )
        except NotFoundError:
            logger.warning("Feedback for unknown article %s", article_id)

    async def close(self) -> None:
        await self.client.close()
