"""
ULP Program Session
====================
Builds a ULP program one word at a time and packages it for the loader.

  - A fixed pool of CAPACITY user slots, each initialised to NOP
  - A cursor (next_free) counting the slots in use
  - A status telling whether the device image matches the draft

On run, the halt epilogue (disable the wake-up timer, then halt) is appended
after the last used slot, a ULP binary header is prepended and the blob is
handed to a loader together with the entry slot.

Binary image (little endian):
    +0   magic[4]        0x00706C75 ("ulp\\0")
    +4   text_offset[2]  12 (header size)
    +6   text_size[2]    (next_free + 2) * 4
    +8   data_size[2]    0
    +10  bss_size[2]     0
    +12  text            instruction words, then the epilogue
"""

from __future__ import annotations
import enum
import struct
from dataclasses import dataclass
from typing import Callable

from ulp_asm import WORD_SIZE, encode_line, encode_variable, normalize_line, parse_variable

# ── Constants ──────────────────────────────────────────────────────────

CAPACITY = 50

ULP_BINARY_MAGIC = 0x00706C75
HEADER_FORMAT = "<IHHHH"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)        # 12

NOP_WORD = bytes((0x00, 0x00, 0x00, 0x40))

# RTC_CNTL_STATE0_REG is word 6 of the RTC_CNTL block; bit 24 is
# RTC_CNTL_ULP_CP_SLP_TIMER_EN.
HALT_EPILOGUE = (
    encode_line("reg_wr 6, 24, 24, 0"),
    encode_line("halt"),
)
EPILOGUE_WORDS = len(HALT_EPILOGUE)

TRANSFER_WORDS = CAPACITY + EPILOGUE_WORDS

# ── Errors ─────────────────────────────────────────────────────────────

class SessionError(Exception):
    """Base for program session errors.  State is unchanged when raised."""
    pass


class CapacityExceeded(SessionError):
    def __init__(self, capacity: int = CAPACITY):
        self.capacity = capacity
        super().__init__(f"program is full ({capacity} instructions)")


class EmptyProgram(SessionError):
    def __init__(self):
        super().__init__("program is empty, nothing to run")


class ImageOutOfDate(SessionError):
    def __init__(self):
        super().__init__("program changed since the last run, run it before listing")


class InvalidRunIndex(SessionError):
    def __init__(self, index: int, max_index: int):
        self.index = index
        self.max_index = max_index
        super().__init__(f"start index {index} out of range, maximum is {max_index}")

# ── Binary image ───────────────────────────────────────────────────────

@dataclass
class UlpImageHeader:
    """The 12-byte header ESP-IDF's ulp_load_binary() expects."""
    text_size: int
    data_size: int = 0
    bss_size: int = 0
    text_offset: int = HEADER_SIZE
    magic: int = ULP_BINARY_MAGIC

    def pack(self) -> bytes:
        return struct.pack(HEADER_FORMAT, self.magic, self.text_offset,
                           self.text_size, self.data_size, self.bss_size)

    @classmethod
    def unpack(cls, data: bytes) -> "UlpImageHeader":
        magic, text_offset, text_size, data_size, bss_size = \
            struct.unpack_from(HEADER_FORMAT, data, 0)
        return cls(text_size, data_size, bss_size, text_offset, magic)


@dataclass(frozen=True)
class RunRequest:
    """A finalized program: the blob for the loader and the entry slot."""
    image: bytes
    entry: int

    @property
    def header(self) -> UlpImageHeader:
        return UlpImageHeader.unpack(self.image)

    @property
    def text(self) -> bytes:
        h = self.header
        return self.image[h.text_offset : h.text_offset + h.text_size]


def build_image(words: list[bytes] | tuple[bytes, ...]) -> bytes:
    """Header + words.  The caller supplies the epilogue."""
    text = b"".join(words)
    return UlpImageHeader(text_size=len(text)).pack() + text

# ── Session ────────────────────────────────────────────────────────────

class SessionStatus(enum.Enum):
    CLEAN = "clean"     # device image matches the draft (or nothing appended)
    DIRTY = "dirty"     # appended since the last run/reset


class ProgramSession:
    """The program under construction and its run/list bookkeeping."""

    def __init__(self, capacity: int = CAPACITY):
        self.capacity = capacity
        self.reset()

    @property
    def dirty(self) -> bool:
        return self.status is SessionStatus.DIRTY

    @property
    def words(self) -> tuple[bytes, ...]:
        """The used slots, in order."""
        return tuple(self.slots[:self.next_free])

    def reset(self):
        """All slots back to NOP, nothing in use."""
        self.slots = [NOP_WORD] * self.capacity
        self.next_free = 0
        self.status = SessionStatus.CLEAN

    def invalidate(self):
        """Mark the device image as stale, e.g. after a failed load."""
        self.status = SessionStatus.DIRTY

    # -- Appending --

    def append_word(self, word: bytes) -> int:
        """Store *word* in the next free slot.  Returns the slot index."""
        if len(word) != WORD_SIZE:
            raise ValueError(f"instruction words are {WORD_SIZE} bytes, got {len(word)}")
        if self.next_free >= self.capacity:
            raise CapacityExceeded(self.capacity)
        index = self.next_free
        self.slots[index] = bytes(word)
        self.next_free += 1
        self.status = SessionStatus.DIRTY
        return index

    def append_instruction(self, text: str | bytes) -> int:
        return self.append_word(encode_line(text))

    def append_variable(self, value: int) -> int:
        return self.append_word(encode_variable(value))

    def append_line(self, text: str | bytes) -> int:
        """Append either a ``var(<uint>)`` data word or an instruction."""
        line = normalize_line(text)
        value = parse_variable(line)
        if value is not None:
            return self.append_variable(value)
        return self.append_instruction(line)

    # -- Run / list --

    def finalize_for_run(self, start: int) -> RunRequest:
        """
        Package the program for the loader, starting execution at slot *start*.

        The halt epilogue goes after the last used slot; it never takes a
        user slot.
        """
        if self.next_free == 0:
            raise EmptyProgram()
        if not 0 <= start < self.next_free:
            raise InvalidRunIndex(start, self.next_free - 1)
        text = self.words + HALT_EPILOGUE
        assert len(text) <= TRANSFER_WORDS, f"{len(text)} words exceed the transfer buffer"
        image = build_image(text)
        self.status = SessionStatus.CLEAN
        return RunRequest(image, start)

    def list_snapshot(self, read_memory: Callable[[int], list[bytes]]) -> list[bytes]:
        """
        Read back the device-resident program.

        Returns [] for an empty session.  Raises ImageOutOfDate while the
        draft has edits that were never run.
        """
        if self.next_free == 0:
            return []
        if self.dirty:
            raise ImageOutOfDate()
        return list(read_memory(self.next_free))
