from ..types import ProviderKind
from .factory import get_normalizer


def normalize_request(raw):
    return get_normalizer("request", raw).process()


def normalize_provider(raw, kind):
    return get_normalizer("provider", raw, kind=kind).process()


def normalize_catalog_item(raw, kind):
    entity = "lab_test" if ProviderKind(kind) is ProviderKind.LABORATORY else "medicine"
    return get_normalizer(entity, raw).process()


__all__ = ["get_normalizer", "normalize_request", "normalize_provider", "normalize_catalog_item"]
