# =============================================================================
# Inbox Sync Parsing Module
# =============================================================================
# Raw RFC 5322 source to MailRecord conversion, shared by all adapters.
# =============================================================================

from inbox_sync.parsing.normalizer import decode_header, map_flags, normalize, parse_date

__all__ = ["normalize", "map_flags", "decode_header", "parse_date"]
