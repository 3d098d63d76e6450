from mirrord.content.addresser import Comparison, ContentAddresser, StreamingFingerprint
from mirrord.content.cache import FingerprintCache
from mirrord.content.types import ContentItem, Fingerprint

__all__ = [
    "Comparison",
    "ContentAddresser",
    "ContentItem",
    "Fingerprint",
    "FingerprintCache",
    "StreamingFingerprint",
]
