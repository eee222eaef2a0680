from sentence_transformers import SentenceTransformer
from typing import List, Optional
import asyncio
import logging
import threading

from config.settings import settings

logger = logging.getLogger(__name__)


def prepare_text_for_embedding(text: str,
                               max_length: Optional[int] = None) -> str:
    """Collapse whitespace and cut to the model's practical input size"""
    max_length = max_length or settings.EMBEDDING_MAX_CHARS
    text = " ".join(text.split())
    return text[:max_length]


class EmbeddingService:
    """
    Sentence-transformer embeddings.

    Queries and articles go through the same ``embed`` call so their vectors
    live in the same space. The model loads on first use.
    """

    def __init__(self, model_name: Optional[str] = None):
        self.model_name = model_name or settings.EMBEDDING_MODEL
        self.model = None
        self._lock = threading.Lock()

    def _load_model(self) -> SentenceTransformer:
        with self._lock:
            if self.model is None:
                self.model = SentenceTransformer(self.model_name)
                logger.info("Loaded embedding model: %s", self.model_name)
        return self.model

    async def embed(self, text: str) -> List[float]:
        """Generate the embedding for a single text"""
        model = await asyncio.to_thread(self._load_model)
        embedding = await asyncio.to_thread(
            model.encode,
            prepare_text_for_embedding(text),
            convert_to_numpy=True
        )
        return embedding.tolist()

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings for multiple texts"""
        if not texts:
            return []
        model = await asyncio.to_thread(self._load_model)
        embeddings = await asyncio.to_thread(
            model.encode,
            [prepare_text_for_embedding(t) for t in texts],
            convert_to_numpy=True,
            batch_size=settings.EMBEDDING_BATCH_SIZE
        )
        return embeddings.tolist()

    def get_embedding_dimension(self) -> int:
        if self.model:
            return self.model.get_sentence_embedding_dimension()
        return settings.EMBEDDING_DIMENSION
