"""Model catalog: parse model identifiers and resolve their on-disk location.

A model identifier is either a known catalog name (optionally carrying a
quantization suffix) or a download URL. URLs have to pass a fixed security
policy before they become a :class:`UrlModel`; a rejected URL is reported
exactly like an unknown name so callers learn nothing about the policy.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence, Union
from urllib.parse import SplitResult, unquote, urlsplit

from .errors import ModelNotSupportedError

__all__ = [
    "CatalogEntry",
    "CatalogModel",
    "UrlModel",
    "ModelVariant",
    "MODEL_CATALOG",
    "QUANTIZATIONS",
    "DEFAULT_QUANTIZATION",
    "HUGGINGFACE_BASE_URL",
    "DEFAULT_ALLOWED_HOSTS",
    "DEFAULT_ALLOWED_EXTENSIONS",
    "parse_model",
    "validate_model_url",
    "model_file_path",
]

LOGGER = logging.getLogger(__name__)

HUGGINGFACE_BASE_URL = "https://huggingface.co"
DEFAULT_QUANTIZATION = "Q6_K"
QUANTIZATIONS: tuple[str, ...] = ("Q6_K", "q4f16_1")
DEFAULT_ALLOWED_HOSTS: tuple[str, ...] = ("huggingface.co", "hf.co")
DEFAULT_ALLOWED_EXTENSIONS: tuple[str, ...] = (".llamafile",)
_LLAMAFILE_SUFFIX = ".llamafile"
_SECURE_SCHEME = "https"
_QUANT_SEPARATORS = "-_."


@dataclass(slots=True, frozen=True)
class CatalogEntry:
    name: str
    repository: str
    base_filename: str


MODEL_CATALOG: Mapping[str, CatalogEntry] = {
    entry.name: entry
    for entry in (
        CatalogEntry("Llama-3.2-1B-Instruct", "Mozilla/Llama-3.2-1B-Instruct-llamafile", "Llama-3.2-1B-Instruct"),
        CatalogEntry("Llama-3.2-3B-Instruct", "Mozilla/Llama-3.2-3B-Instruct-llamafile", "Llama-3.2-3B-Instruct"),
        CatalogEntry(
            "Mistral-7B-Instruct-v0.3", "Mozilla/Mistral-7B-Instruct-v0.3-llamafile", "Mistral-7B-Instruct-v0.3"
        ),
        CatalogEntry(
            "Mixtral-8x7B-Instruct-v0.1",
            "Mozilla/Mixtral-8x7B-Instruct-v0.1-llamafile",
            "Mixtral-8x7B-Instruct-v0.1",
        ),
        CatalogEntry("gemma-2-2b-it", "Mozilla/gemma-2-2b-it-llamafile", "gemma-2-2b-it"),
        CatalogEntry("gemma-2-9b-it", "Mozilla/gemma-2-9b-it-llamafile", "gemma-2-9b-it"),
        CatalogEntry("gemma-2-27b-it", "Mozilla/gemma-2-27b-it-llamafile", "gemma-2-27b-it"),
    )
}

_CATALOG_RE = re.compile(
    r"^(?P<name>{names})(?:[{seps}](?P<quant>{quants}))?$".format(
        names="|".join(re.escape(name) for name in sorted(MODEL_CATALOG, key=len, reverse=True)),
        seps=re.escape(_QUANT_SEPARATORS),
        quants="|".join(re.escape(quant) for quant in QUANTIZATIONS),
    )
)


@dataclass(slots=True, frozen=True)
class CatalogModel:
    """A known model, optionally pinned to a quantization."""

    entry: CatalogEntry
    quantization: str | None = None

    @property
    def file_name(self) -> str:
        quant = self.quantization or DEFAULT_QUANTIZATION
        return f"{self.entry.base_filename}.{quant}{_LLAMAFILE_SUFFIX}"

    @property
    def download_url(self) -> str:
        return f"{HUGGINGFACE_BASE_URL}/{self.entry.repository}/resolve/main/{self.file_name}?download=true"

    def __str__(self) -> str:
        return self.entry.name


@dataclass(slots=True, frozen=True)
class UrlModel:
    """A caller-supplied download URL that already passed :func:`validate_model_url`."""

    url: str
    file_name: str

    @property
    def download_url(self) -> str:
        return self.url

    def __str__(self) -> str:
        return self.url


ModelVariant = Union[CatalogModel, UrlModel]


def parse_model(
    text: str,
    *,
    allowed_hosts: Sequence[str] = DEFAULT_ALLOWED_HOSTS,
    allowed_extensions: Sequence[str] = DEFAULT_ALLOWED_EXTENSIONS,
) -> ModelVariant:
    """Resolve ``text`` to a catalog model or a validated URL model.

    Raises :class:`ModelNotSupportedError` for anything else.
    """

    candidate = (text or "").strip()
    match = _CATALOG_RE.match(candidate)
    if match:
        return CatalogModel(MODEL_CATALOG[match.group("name")], match.group("quant"))

    file_name = validate_model_url(
        candidate, allowed_hosts=allowed_hosts, allowed_extensions=allowed_extensions
    )
    if file_name is None:
        raise ModelNotSupportedError(f"Model '{candidate}' is not supported")
    return UrlModel(url=candidate, file_name=file_name)


def validate_model_url(
    text: str,
    *,
    allowed_hosts: Sequence[str] = DEFAULT_ALLOWED_HOSTS,
    allowed_extensions: Sequence[str] = DEFAULT_ALLOWED_EXTENSIONS,
) -> str | None:
    """Return the cache file name for an acceptable model URL, else ``None``.

    The reason for a rejection is only logged at debug level.
    """

    try:
        parts = urlsplit(text)
        hostname = parts.hostname
        parts.port  # raises ValueError for malformed ports
    except ValueError as exc:
        LOGGER.debug("Model URL rejected (syntax): %s", exc)
        return None

    if parts.scheme.lower() != _SECURE_SCHEME:
        LOGGER.debug("Model URL rejected (scheme %r)", parts.scheme)
        return None
    if not hostname or parts.username is not None or parts.password is not None:
        LOGGER.debug("Model URL rejected (host or credentials)")
        return None
    if not _host_allowed(hostname, allowed_hosts):
        LOGGER.debug("Model URL rejected (host %s not allowed)", hostname)
        return None

    segments = _path_segments(parts)
    if not segments or any(segment in {"..", "."} for segment in segments) or ".." in unquote(parts.path):
        LOGGER.debug("Model URL rejected (path traversal or empty path)")
        return None

    file_name = segments[-1]
    if not any(file_name.lower().endswith(ext.lower()) for ext in allowed_extensions):
        LOGGER.debug("Model URL rejected (extension of %r)", file_name)
        return None
    if "/" in file_name or "\\" in file_name or _has_control_chars(file_name):
        LOGGER.debug("Model URL rejected (unsafe file name)")
        return None
    return file_name


def model_file_path(variant: ModelVariant, models_dir: Path | None = None) -> Path:
    """Return ``<models_dir>/<file name>``, defaulting to ``~/.blessnet/models``."""

    base = models_dir if models_dir is not None else Path.home() / ".blessnet" / "models"
    return base / variant.file_name


def _host_allowed(hostname: str, allowed_hosts: Sequence[str]) -> bool:
    host = hostname.lower().rstrip(".")
    for allowed in allowed_hosts:
        allowed = allowed.lower()
        if host == allowed or host.endswith("." + allowed):
            return True
    return False


def _path_segments(parts: SplitResult) -> list[str]:
    raw = [segment for segment in parts.path.split("/") if segment]
    return [unquote(segment) for segment in raw]


def _has_control_chars(value: str) -> bool:
    return any(unicodedata.category(char) == "Cc" for char in value)
