from .signature_cache import SignatureCache

__all__ = ["SignatureCache"]
