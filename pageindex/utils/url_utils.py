from urllib.parse import urlparse, urlunparse
import re


_URL_WORD_SPLIT = re.compile(r"[/.\-_:]")


def _clean_tracking_params(query: str) -> str:
    clean_query = re.sub(r"(utm_[^=&]+|sessionid|fbclid|ref|gclid)=[^&]*", "", query, flags=re.IGNORECASE)
    clean_query = re.sub(r"&&+", "&", clean_query).strip("&")
    return clean_query


def normalize_url(url: str) -> str | None:
    """Normalize a URL into the form used as the record identity key."""
    try:
        raw = url.strip()
        parsed = urlparse(raw)

        # only http and https are indexed
        if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
            return None

        clean_query = _clean_tracking_params(parsed.query)

        path = parsed.path or "/"
        path = re.sub(r"/{2,}", "/", path)
        if path != "/" and path.endswith("/"):
            path = path[:-1]

        parsed = parsed._replace(
            scheme=parsed.scheme.lower(),
            netloc=parsed.netloc.lower(),
            path=path,
            query=clean_query,
            fragment="",
        )
        return urlunparse(parsed)

    except Exception:
        return None


def get_domain(url: str) -> str:
    """Strip the scheme and return the authority component without port."""
    try:
        if "//" in url:
            netloc = urlparse(url).netloc
        else:
            # bare "host/path" input
            netloc = url.split("/", 1)[0]
        netloc = netloc.rsplit("@", 1)[-1].lower()
        return netloc.split(":", 1)[0]
    except Exception:
        return ""


def split_url_to_words(url: str) -> list[str]:
    """Split a URL into distinct words for full-text matching on the address."""
    words: list[str] = []
    for word in _URL_WORD_SPLIT.split(url):
        if word and word not in words:
            words.append(word)
    return words
