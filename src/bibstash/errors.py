"""Exception hierarchy for Bibstash.

Every error message says what happened, why, and what happens next, so a
log line alone is enough to decide whether an operator needs to act.
Per-key errors are caught inside the seeding and reconciliation loops;
only index I/O failures end a collection pass.
"""


class BibstashError(Exception):
    """Base class for all Bibstash errors."""


class Unparseable(BibstashError):
    """An index key matches none of the known key formats."""

    def __init__(self, key: str):
        super().__init__(
            f"Key '{key}' is not an API URL, public URL, relative query, "
            f"collection/identifier path or bare identifier. "
            f"It will be removed from the index."
        )
        self.key = key


class MalformedKey(BibstashError):
    """A key carries one of the known historical corruption signatures."""

    def __init__(self, key: str, repaired: str, msg: str):
        super().__init__(msg)
        self.key = key
        self.repaired = repaired


class MalformedRecoverable(MalformedKey):
    """A corrupted key was repaired into a valid key of its collection."""

    def __init__(self, key: str, repaired: str):
        super().__init__(
            key,
            repaired,
            f"Malformed key '{key}' repaired to '{repaired}'. "
            f"The entry will be re-keyed under the repaired URL.",
        )


class MalformedUnrecoverable(MalformedKey):
    """Repair produced an invalid or cross-collection key."""

    def __init__(self, key: str, repaired: str, collection: str):
        super().__init__(
            key,
            repaired,
            f"Malformed key '{key}' could not be repaired for collection "
            f"'{collection}' (best attempt: '{repaired}'). "
            f"The entry will be removed rather than guessed at.",
        )
        self.collection = collection


class FetchError(BibstashError):
    """Base class for upstream fetch failures."""

    def __init__(self, url: str, msg: str):
        super().__init__(msg)
        self.url = url


class TransientFetchFailure(FetchError):
    """Network or HTTP failure other than 404; worth retrying next pass."""

    def __init__(self, url: str, status_code: int = 0, detail: str = ""):
        if status_code == 0:
            msg = f"Could not reach {url}. {detail}"
        else:
            msg = f"{url} returned HTTP {status_code}. {detail}"
        msg += " The index entry is kept and will be retried on the next pass."
        super().__init__(url, " ".join(msg.split()))
        self.status_code = status_code
        self.detail = detail


class NotFoundUpstream(FetchError):
    """The resource no longer exists upstream (HTTP 404)."""

    def __init__(self, url: str, chain: list[str] | None = None):
        hops = f" after {len(chain) - 1} redirect(s)" if chain and len(chain) > 1 else ""
        super().__init__(
            url,
            f"{url} returned HTTP 404{hops}. "
            f"The resource was removed upstream and its index entry will be dropped.",
        )
        self.chain = list(chain or [url])


class RedirectLoopExceeded(FetchError):
    """More redirects than the configured bound."""

    def __init__(self, url: str, max_redirects: int, chain: list[str]):
        super().__init__(
            url,
            f"Gave up on {url} after {max_redirects} redirects "
            f"(last hop: {chain[-1] if chain else url}). "
            f"The index entry is left untouched; check the redirect chain upstream.",
        )
        self.max_redirects = max_redirects
        self.chain = list(chain)


class SchemaMismatch(BibstashError):
    """An index file matches none of the known schema shapes."""

    def __init__(self, path: str, detail: str = ""):
        msg = f"Index file '{path}' matches no known index schema"
        if detail:
            msg += f" ({detail})"
        msg += ". It is treated as empty and will be rebuilt from the files on disk."
        super().__init__(msg)
        self.path = path
        self.detail = detail


class IndexIOError(BibstashError):
    """The collection index file could not be read or written."""

    def __init__(self, path: str, detail: str):
        super().__init__(
            f"Could not access index file '{path}': {detail}. "
            f"The pass for this collection was aborted and the index on disk "
            f"was not modified. Check permissions and free disk space."
        )
        self.path = path
        self.detail = detail


class ConfigError(BibstashError):
    """Configuration is missing or invalid."""

    def __init__(self, detail: str, hint: str = ""):
        msg = f"Configuration error: {detail}."
        if hint:
            msg += f" {hint}"
        super().__init__(msg)
        self.detail = detail
        self.hint = hint
