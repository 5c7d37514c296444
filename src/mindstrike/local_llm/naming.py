"""Identifiers and filename-derived hints for GGUF model files.

Model ids are the md5 of the filename so the same file keeps its id (and its
persisted settings) when the models directory moves. Quantization, parameter
count and context hints are best-effort reads of the naming conventions used
on Hugging Face (``Llama-3.1-8B-Instruct-Q4_K_M.gguf``, ``...-32k.gguf``).
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Optional

DEFAULT_QUANTIZATION = "F16"
GGUF_SUFFIX = ".gguf"

_QUANT_PATTERNS = [
    re.compile(r"(?<![a-z])(IQ\d+_[a-z0-9]+(?:_[a-z]+)?)", re.IGNORECASE),
    re.compile(r"(?<![a-z])(Q\d+_[a-z0-9]+(?:_[a-z]+)?)", re.IGNORECASE),
    re.compile(r"(?<![a-z])(IQ\d+)(?![a-z0-9])", re.IGNORECASE),
    re.compile(r"(?<![a-z])(Q\d+)(?![a-z0-9])", re.IGNORECASE),
    re.compile(r"(?<![a-z0-9])(bf16|fp16|fp32|f16|f32)(?![a-z0-9])", re.IGNORECASE),
]
_PARAM_RE = re.compile(r"(?<![\d.])(\d+(?:\.\d+)?)B(?![a-z])", re.IGNORECASE)
_CONTEXT_RE = re.compile(r"(?<![a-z0-9])(\d+)k(?![a-z])", re.IGNORECASE)


def model_id_for(filename: str) -> str:
    return hashlib.md5(filename.encode("utf-8")).hexdigest()


def display_name_for(filename: str) -> str:
    if filename.lower().endswith(GGUF_SUFFIX):
        return filename[: -len(GGUF_SUFFIX)]
    return filename


def parse_quantization(filename: str) -> Optional[str]:
    for pattern in _QUANT_PATTERNS:
        match = pattern.search(filename)
        if match:
            return match.group(1).upper()
    if filename.lower().endswith(GGUF_SUFFIX):
        return DEFAULT_QUANTIZATION
    return None


def parse_parameter_count(name: str) -> Optional[str]:
    match = _PARAM_RE.search(name)
    if match:
        return f"{match.group(1)}B"
    return None


def parse_context_hint(filename: str) -> Optional[int]:
    """``mistral-7b-32k.gguf`` -> 32768."""

    match = _CONTEXT_RE.search(filename)
    if match:
        return int(match.group(1)) * 1024
    return None


@dataclass(frozen=True)
class FilenameHints:
    quantization: Optional[str]
    parameter_count: Optional[str]
    context_length: Optional[int]


def parse_filename(filename: str) -> FilenameHints:
    return FilenameHints(
        quantization=parse_quantization(filename),
        parameter_count=parse_parameter_count(filename),
        context_length=parse_context_hint(filename),
    )


def format_remote_name(
    repo_id: str, parameter_count: Optional[str], quantization: Optional[str]
) -> str:
    """``TheBloke/Mistral-7B-Instruct-v0.2-GGUF`` -> ``Mistral 7B Instruct v0.2 Q4_K_M``."""

    base = repo_id.rsplit("/", 1)[-1]
    base = re.sub(r"-gguf$", "", base, flags=re.IGNORECASE)
    base = base.replace("-", " ").replace("_", " ").strip()
    parts = [base]
    if parameter_count and parameter_count not in base:
        parts.append(parameter_count)
    if quantization:
        parts.append(quantization)
    return " ".join(part for part in parts if part)
