from app.utils.url_parser import ServiceType, classify, detect_service, extract_identifier, normalize_url
from app.utils.logging import setup_logging

__all__ = ["ServiceType", "classify", "detect_service", "extract_identifier", "normalize_url", "setup_logging"]
