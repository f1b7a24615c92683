from .document_extractor import DocumentExtractor
from .image_analysis import ImageDescriber, is_image_ref
from .llm_client import ReasoningModelClient
from .object_fetch import FetchedObject, ObjectFetcher, ObjectFetchError

__all__ = [
    "DocumentExtractor",
    "FetchedObject",
    "ImageDescriber",
    "ObjectFetchError",
    "ObjectFetcher",
    "ReasoningModelClient",
    "is_image_ref",
]
