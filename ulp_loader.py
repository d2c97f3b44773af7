"""
ULP Loaders: where finished program images go
=============================================
Pluggable targets for the images produced by ProgramSession.finalize_for_run().

Loader hierarchy:
  UlpLoader              abstract base
  ├─ RtcSlowMemory       in-process model of RTC slow memory (tests, dry runs)
  └─ ImageFileLoader     RtcSlowMemory that also writes every image to a file

RtcSlowMemory applies the checks ESP-IDF's ulp_load_binary() and ulp_run()
apply on the chip, so an image it accepts is one the firmware accepts.

Usage:
  from ulp_loader import RtcSlowMemory
  rtc = RtcSlowMemory()
  rtc.load_image(request.image)
  rtc.start(request.entry)
"""

from __future__ import annotations

import abc
from typing import Optional

from ulp_asm import WORD_SIZE
from ulp_session import HEADER_SIZE, ULP_BINARY_MAGIC, UlpImageHeader

# ── Constants ─────────────────────────────────────────────────────────

# CONFIG_ULP_COPROC_RESERVE_MEM default
DEFAULT_RESERVE_MEM = 512


class LoaderError(Exception):
    """Raised when a loader rejects an image, an entry point or a read."""
    pass


# ══════════════════════════════════════════════════════════════════════
#  Abstract base
# ══════════════════════════════════════════════════════════════════════

class UlpLoader(abc.ABC):
    """Abstract loader.  Subclasses place an image in coprocessor memory,
    start it and read memory back.
    """

    @abc.abstractmethod
    def load_image(self, image: bytes):
        """Copy a header + text blob into coprocessor memory."""
        ...

    @abc.abstractmethod
    def start(self, entry: int):
        """Start execution at word *entry* of the loaded program."""
        ...

    @abc.abstractmethod
    def read_memory(self, word_count: int) -> list[bytes]:
        """Return the first *word_count* words of coprocessor memory."""
        ...

    @property
    def name(self) -> str:
        """Human-readable loader name for status display."""
        return type(self).__name__


# ══════════════════════════════════════════════════════════════════════
#  RTC slow memory model
# ══════════════════════════════════════════════════════════════════════

class RtcSlowMemory(UlpLoader):
    """Reserved RTC slow memory, loaded at word 0.

    Nothing executes: start() only validates and records the entry point.
    """

    def __init__(self, reserve_mem: int = DEFAULT_RESERVE_MEM):
        if reserve_mem <= 0 or reserve_mem % WORD_SIZE:
            raise ValueError(f"reserve_mem must be a positive multiple of {WORD_SIZE}")
        self.reserve_mem = reserve_mem
        self.mem = bytearray(reserve_mem)
        self.loaded_words = 0
        self.entry: Optional[int] = None
        self.load_count = 0

    @property
    def running(self) -> bool:
        return self.entry is not None

    def load_image(self, image: bytes):
        if len(image) < HEADER_SIZE:
            raise LoaderError(f"image of {len(image)} bytes is shorter than the "
                              f"{HEADER_SIZE}-byte header")
        header = UlpImageHeader.unpack(image)
        if header.magic != ULP_BINARY_MAGIC:
            raise LoaderError(f"bad magic {header.magic:#010x}, "
                              f"expected {ULP_BINARY_MAGIC:#010x}")
        if header.text_offset < HEADER_SIZE:
            raise LoaderError(f"text offset {header.text_offset} overlaps the header")
        payload_end = header.text_offset + header.text_size + header.data_size
        if len(image) < payload_end:
            raise LoaderError(f"image is {len(image)} bytes, header describes "
                              f"{payload_end}")
        total = header.text_size + header.data_size + header.bss_size
        if total > self.reserve_mem:
            raise LoaderError(f"program needs {total} bytes, only "
                              f"{self.reserve_mem} reserved")

        payload = image[header.text_offset:payload_end]
        self.mem[0:len(payload)] = payload
        self.mem[len(payload):total] = bytes(header.bss_size)
        self.loaded_words = header.text_size // WORD_SIZE
        self.entry = None
        self.load_count += 1

    def start(self, entry: int):
        if not 0 <= entry < self.loaded_words:
            raise LoaderError(f"entry point {entry} is outside the loaded "
                              f"program (0..{self.loaded_words - 1})")
        self.entry = entry

    def read_memory(self, word_count: int) -> list[bytes]:
        if word_count * WORD_SIZE > self.reserve_mem:
            raise LoaderError(f"cannot read {word_count} words from "
                              f"{self.reserve_mem} bytes of reserved memory")
        return [bytes(self.mem[i:i + WORD_SIZE])
                for i in range(0, word_count * WORD_SIZE, WORD_SIZE)]

    @property
    def name(self) -> str:
        return "rtc-slow-mem"


# ══════════════════════════════════════════════════════════════════════
#  Image file
# ══════════════════════════════════════════════════════════════════════

class ImageFileLoader(RtcSlowMemory):
    """Also writes each accepted image to *path*, e.g. for flashing with
    ulp_load_binary() from application firmware.
    """

    def __init__(self, path: str, reserve_mem: int = DEFAULT_RESERVE_MEM):
        super().__init__(reserve_mem)
        self.path = path

    def load_image(self, image: bytes):
        super().load_image(image)
        try:
            with open(self.path, "wb") as f:
                f.write(image)
        except OSError as e:
            raise LoaderError(f"cannot write {self.path}: {e}") from e

    @property
    def name(self) -> str:
        return f"file:{self.path}"
