from typing import Iterable, List, Optional
import hashlib
import logging
import re

from config.settings import settings
from helpdesk_ai.exceptions import ReferenceNotFoundError
from helpdesk_ai.models.schemas import KnowledgeArticle, SearchResult, utc_now
from helpdesk_ai.services.embedding_service import EmbeddingService
from helpdesk_ai.services.vector_index import VectorIndex

logger = logging.getLogger(__name__)

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_WORD_RE = re.compile(r"\w+", re.UNICODE)


def embedding_text(article: KnowledgeArticle) -> str:
    """The text that gets embedded for an article"""
    return f"{article.title}\n\n{article.content}"


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def extract_excerpt(content: str, query: str, max_chars: int = 200) -> str:
    """
    Pick the sentence sharing the most words with the query.

    Falls back to the first sentence when nothing matches.
    """
    sentences = [s.strip() for s in _SENTENCE_SPLIT_RE.split(content) if s.strip()]
    if not sentences:
        return ""

    query_words = {w for w in _WORD_RE.findall(query.lower()) if len(w) > 2}
    best = sentences[0]
    best_score = 0
    for sentence in sentences:
        sentence_words = set(_WORD_RE.findall(sentence.lower()))
        score = len(query_words & sentence_words)
        if score > best_score:
            best, best_score = sentence, score

    if len(best) > max_chars:
        best = best[:max_chars - 3].rstrip() + "..."
    return best


class KnowledgeAgent:
    """Agent responsible for indexing and retrieving knowledge articles"""

    def __init__(self,
                 embedding_service: EmbeddingService,
                 vector_index: VectorIndex):
        self.name = "Knowledge Agent"
        self.embedding_service = embedding_service
        self.vector_index = vector_index
        self.default_top_k = settings.KNOWLEDGE_TOP_K
        self.min_relevance = settings.KNOWLEDGE_MIN_RELEVANCE
        self.excerpt_chars = settings.KNOWLEDGE_EXCERPT_CHARS

    async def search(self,
                     query: str,
                     account_id: str,
                     top_k: Optional[int] = None,
                     min_relevance: Optional[float] = None) -> List[SearchResult]:
        """
        Return up to ``top_k`` published articles of the tenant whose
        relevance is strictly above ``min_relevance``.

        Results are ordered by relevance, highest first; ties go to the
        lower article id so the same query always yields the same list.
        """
        top_k = self.default_top_k if top_k is None else top_k
        threshold = self.min_relevance if min_relevance is None else min_relevance
        if top_k <= 0 or not query or not query.strip():
            return []

        query_embedding = await self.embedding_service.embed(query)
        hits = await self.vector_index.search(query_embedding, account_id,
                                              limit=top_k)

        results = [
            SearchResult(
                article=article,
                relevance=round(relevance, 6),
                excerpt=extract_excerpt(article.content, query,
                                        self.excerpt_chars)
            )
            for article, relevance in hits
            if relevance > threshold
        ]
        results.sort(key=lambda r: (-r.relevance, r.article.id))
        logger.debug("Knowledge search for account %s returned %d articles",
                     account_id, len(results))
        return results[:top_k]

    async def add_article(self, article: KnowledgeArticle) -> KnowledgeArticle:
        """Embed and index a new article"""
        text = embedding_text(article)
        embedding = await self.embedding_service.embed(text)
        await self.vector_index.upsert(article, embedding, content_hash(text))
        logger.info("Indexed article %s (%s)", article.id, article.title)
        return article

    async def update_article(self,
                             article_id: str,
                             **changes) -> KnowledgeArticle:
        """
        Apply field changes to an article.

        The embedding is regenerated whenever the embedded text changes, and
        also when the stored vector is missing or was built from stale text.
        """
        indexed = await self.vector_index.get(article_id)
        if indexed is None:
            raise ReferenceNotFoundError("article", article_id)

        article = indexed.article.model_copy(
            update={**changes, "updated_at": utc_now()}
        )
        article = KnowledgeArticle.model_validate(article.model_dump())
        text = embedding_text(article)
        new_hash = content_hash(text)

        if new_hash != indexed.content_hash or not indexed.embedding:
            embedding = await self.embedding_service.embed(text)
            await self.vector_index.upsert(article, embedding, new_hash)
            logger.info("Re-embedded article %s after content change",
                        article_id)
        else:
            await self.vector_index.update_metadata(article)
        return article

    async def set_published(self, article_id: str,
                            published: bool) -> KnowledgeArticle:
        return await self.update_article(article_id, published=published)

    async def delete_article(self, article_id: str) -> bool:
        deleted = await self.vector_index.delete(article_id)
        if deleted:
            logger.info("Deleted article %s", article_id)
        return deleted

    async def get_article(self, article_id: str) -> Optional[KnowledgeArticle]:
        indexed = await self.vector_index.get(article_id)
        return indexed.article if indexed else None

    async def list_articles(self, account_id: str) -> List[KnowledgeArticle]:
        return await self.vector_index.list_articles(account_id)

    async def reindex_account(self, account_id: str) -> int:
        """Re-embed every article of the account whose vector is stale"""
        repaired = 0
        for article in await self.vector_index.list_articles(account_id):
            indexed = await self.vector_index.get(article.id)
            text = embedding_text(article)
            if indexed.embedding and indexed.content_hash == content_hash(text):
                continue
            embedding = await self.embedding_service.embed(text)
            await self.vector_index.upsert(article, embedding, content_hash(text))
            repaired += 1
        return repaired

    async def record_feedback(self, article_ids: Iterable[str],
                              helpful: bool) -> None:
        """Count a draft outcome against the articles it was grounded on"""
        for article_id in article_ids:
            await self.vector_index.increment_feedback(article_id, helpful)
