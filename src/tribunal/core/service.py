"""Service facade wiring extraction, embeddings, the queue and search together."""

from pathlib import Path
from typing import Dict, List, Optional, Tuple, Type, Union

from .config import Settings
from .embed import EmbeddingBackend, EmbeddingGenerator, build_backend
from .extract import OcrEngine, TesseractOcrEngine, TextExtractor
from .jobs import BackgroundJobQueue, BaseJobQueue
from .logging_config import get_audit_logger
from .models import Document, DocumentStatus, Job, JobKind, QueueStats, SearchMode, SearchResponse
from .pipeline import IngestionPipeline
from .search import SearchEngine
from .store import CaseMetadataSource, ContentStore, PostgresCaseMetadataSource, PostgresContentStore

logger = get_audit_logger("service")


class CaseSearchService:
    """Operations exposed to callers: queueing, status and search."""

    def __init__(
        self,
        pipeline: IngestionPipeline,
        queue: BaseJobQueue,
        search_engine: SearchEngine,
        settings: Optional[Settings] = None,
    ):
        self.pipeline = pipeline
        self.queue = queue
        self.search_engine = search_engine
        self.settings = settings or Settings()

    def register_document(self, case_id: str, file_path: Union[str, Path],
                          document_id: Optional[str] = None) -> Document:
        return self.pipeline.register_document(case_id, file_path, document_id)

    def enqueue(self, document_id: str) -> Job:
        return self.queue.enqueue(document_id, JobKind.PROCESS)

    def enqueue_pending(self, limit: Optional[int] = None) -> List[Job]:
        """Queue PENDING documents, oldest first."""
        pending = self.pipeline.list_pending_documents(
            limit if limit is not None else self.settings.pending_batch_size
        )
        logger.info("pending_documents_found", count=len(pending))
        return [self.queue.enqueue(doc.id, JobKind.PROCESS) for doc in pending]

    def reprocess(self, document_id: str) -> Job:
        return self.queue.enqueue(document_id, JobKind.REPROCESS)

    def get_job(self, job_id: str) -> Job:
        return self.queue.get_job(job_id)

    def list_jobs(self, limit: int = 50) -> List[Job]:
        return self.queue.list_jobs(limit)

    def get_queue_stats(self) -> QueueStats:
        return self.queue.get_stats()

    def clear_finished_jobs(self) -> int:
        return self.queue.clear_finished()

    def get_document_status(self, document_id: str) -> DocumentStatus:
        return self.pipeline.get_document_status(document_id)

    def get_processing_stats(self) -> Dict[str, int]:
        return self.pipeline.get_processing_stats()

    def search(
        self,
        query: str,
        limit: Optional[int] = None,
        mode: Union[SearchMode, str] = SearchMode.HYBRID,
        weights: Optional[Tuple[float, float]] = None,
    ) -> SearchResponse:
        return self.search_engine.search(
            query,
            limit=limit if limit is not None else self.settings.search_default_limit,
            mode=mode,
            weights=weights,
        )


def build_service(
    settings: Optional[Settings] = None,
    store: Optional[ContentStore] = None,
    metadata_source: Optional[CaseMetadataSource] = None,
    ocr_engine: Optional[OcrEngine] = None,
    embedding_backend: Optional[EmbeddingBackend] = None,
    queue_cls: Type[BaseJobQueue] = BackgroundJobQueue,
) -> CaseSearchService:
    """
    Build a CaseSearchService from settings.

    Collaborators not passed in are created from settings: Postgres store and
    case metadata, tesseract OCR, and the configured embedding backend. The
    embedding model is loaded once here and shared by ingestion and search.
    """
    settings = settings or Settings.from_env()
    settings.validate()

    if store is None:
        store = PostgresContentStore(settings.database_url)
    if metadata_source is None and isinstance(store, PostgresContentStore):
        metadata_source = PostgresCaseMetadataSource(settings.database_url)
    if ocr_engine is None:
        ocr_engine = TesseractOcrEngine(language=settings.ocr_language)
    if embedding_backend is None:
        embedding_backend = build_backend(
            settings.embed_provider,
            settings.embed_model,
            settings.embed_dimension,
            device=settings.embed_device,
            api_key=settings.openai_api_key,
        )

    embedder = EmbeddingGenerator(
        embedding_backend,
        dimension=settings.embed_dimension,
        max_chars=settings.embed_max_chars,
        batch_size=settings.embed_batch_size,
    )
    embedder.load()

    extractor = TextExtractor(
        ocr_engine,
        embedded_text_threshold=settings.embedded_text_threshold,
        ocr_zoom=settings.ocr_zoom,
    )
    pipeline = IngestionPipeline(
        store,
        extractor,
        embedder,
        embedding_min_chars=settings.embedding_min_chars,
    )
    search_engine = SearchEngine(
        store,
        embedder,
        metadata_source=metadata_source,
        snippet_max_length=settings.snippet_max_length,
        snippet_context=settings.snippet_context,
        default_weights=(settings.hybrid_lexical_weight, settings.hybrid_semantic_weight),
        candidate_pool=settings.hybrid_candidate_pool,
    )

    logger.info("service_built", store=type(store).__name__, embed_model=embedder.model_name,
                queue=queue_cls.__name__)
    return CaseSearchService(pipeline, queue_cls(pipeline), search_engine, settings)
