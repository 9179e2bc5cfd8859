"""Tests for the compression codec."""

import gzip
import zlib

import brotli
import pytest

from enigma_integrity._compression import CompressionCodec
from enigma_integrity.config import CompressionConfig
from enigma_integrity.errors import ConfigError
from tests.utils import css_payload


@pytest.fixture
def payload():
    return css_payload().encode("utf-8")


@pytest.mark.parametrize("algorithm", ["gzip", "deflate", "brotli"])
def test_round_trip(payload, algorithm):
    codec = CompressionCodec(CompressionConfig(enabled=True, algorithm=algorithm))
    compressed = codec.compress(payload)
    assert len(compressed) < len(payload)
    assert codec.decompress(compressed) == payload


def test_formats_are_standard(payload):
    """Artifacts are readable by the stock decoders."""
    codec = CompressionCodec(CompressionConfig(enabled=True))
    assert gzip.decompress(codec.compress(payload, "gzip")) == payload
    assert zlib.decompress(codec.compress(payload, "deflate")) == payload
    assert brotli.decompress(codec.compress(payload, "brotli", level=11)) == payload


def test_gzip_output_is_deterministic(payload):
    codec = CompressionCodec(CompressionConfig(enabled=True))
    assert codec.compress(payload) == codec.compress(payload)


def test_threshold():
    codec = CompressionCodec(CompressionConfig(enabled=True, threshold=1024))
    assert codec.should_compress(1023) is False
    assert codec.should_compress(1024) is True

    disabled = CompressionCodec(CompressionConfig(enabled=False, threshold=0))
    assert disabled.should_compress(10_000) is False


def test_level_out_of_range():
    codec = CompressionCodec(CompressionConfig(enabled=True))
    with pytest.raises(ConfigError, match="level must be between"):
        codec.compress(b"data", "gzip", level=12)


def test_unknown_algorithm():
    codec = CompressionCodec(CompressionConfig(enabled=True))
    with pytest.raises(ConfigError):
        codec.decompress(b"data", "lzma")
    with pytest.raises(ConfigError):
        CompressionCodec.suffix_for("lzma")


def test_suffixes():
    assert CompressionCodec.suffix_for("gzip") == ".gz"
    assert CompressionCodec.suffix_for("deflate") == ".deflate"
    assert CompressionCodec.suffix_for("brotli") == ".br"
    assert CompressionCodec.algorithm_for_suffix(".br") == "brotli"
    assert CompressionCodec.algorithm_for_suffix(".zip") is None


def test_compression_ratio():
    assert CompressionCodec.compression_ratio(1000, 250) == 4.0
    assert CompressionCodec.compression_ratio(1000, 0) == 0.0


@pytest.mark.asyncio
async def test_async_round_trip(payload):
    codec = CompressionCodec(CompressionConfig(enabled=True, algorithm="brotli", level=5))
    compressed = await codec.acompress(payload)
    assert await codec.adecompress(compressed) == payload
