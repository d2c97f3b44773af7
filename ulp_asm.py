"""
ESP32 ULP Assembler
====================
Translates ULP assembly text into 4-byte instruction words for the ESP32
ultra-low-power (FSM) coprocessor.

Supports:
  - ALU ops (add, sub, and, or, move, lsh, rsh) among registers or with a
    16-bit immediate
  - Stage counter ops (stage_rst, stage_inc, stage_dec)
  - Memory access (st, ld) with byte offsets
  - Jumps: absolute (jump, optional eq/ov), relative on R0 (jumpr) and
    relative on the stage counter (jumps)
  - halt, wake, sleep, wait, nop, tsens, adc, i2c_rd/i2c_wr, reg_rd/reg_wr
  - Data words: var(<0..65535>)
  - Immediate literals (decimal, hex with 0x prefix)

Operands are separated by commas and/or whitespace.  There are no labels:
jump targets and memory offsets are written in bytes.

Usage:
  from ulp_asm import encode_line
  word = encode_line("move r1, 0x10")     # b'\\x01\\x01\\x80\\x72'
"""

from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Callable, Optional

WORD_SIZE = 4

# ---------------------------------------------------------------------------
#  Sub-operation maps
# ---------------------------------------------------------------------------

# ALU operation (opcode 0x7)
ALU_OPS = {
    "add": 0, "sub": 1, "and": 2, "or": 3,
    "move": 4, "lsh": 5, "rsh": 6,
}

# Stage counter operation (opcode 0x7, sub-opcode 2)
STAGE_OPS = {"stage_inc": 0, "stage_dec": 1, "stage_rst": 2}

# Absolute jump type (opcode 0x8, sub-opcode 0)
JUMP_TYPES = {"": 0, "eq": 1, "ov": 2}

# Relative jump conditions the hardware implements
JUMPR_CONDS = {"lt": 0, "ge": 1}
JUMPS_CONDS = {"lt": 0, "ge": 1, "le": 2}

UNSUPPORTED_JUMPR_MESSAGE = (
    'The conditions "eq", "le" and "gt" are not supported by the ULP. '
    'Please use "lt" or "ge" instead.'
)
UNSUPPORTED_JUMPS_MESSAGE = (
    'The conditions "eq" and "gt" are not supported by the ULP. '
    'Please use "lt", "le" or "ge" instead.'
)

MAX_VARIABLE = 0xFFFF

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class AsmError(Exception):
    def __init__(self, msg: str, line: Optional[int] = None):
        self.line = line
        super().__init__(f"Line {line}: {msg}" if line is not None else msg)


class UnsupportedCommand(AsmError):
    """No instruction pattern matched the normalized line."""

    def __init__(self, text: str):
        self.text = text
        super().__init__(f"unsupported command {text!r}")


class UnsupportedVariant(AsmError):
    """The line matched, but the ULP has no encoding for that condition."""


class InvalidOperand(AsmError):
    pass

# ---------------------------------------------------------------------------
#  Text normalizer / tokenizer
# ---------------------------------------------------------------------------

_WHITESPACE = " \t\r\n"
_WHITESPACE_RUN = re.compile(r"[ \t\r\n]+")


def normalize_line(raw: str | bytes) -> str:
    """Trim, lowercase, turn commas into spaces and collapse whitespace runs.

    ``"  MOVE R1,  0x10 "`` becomes ``"move r1 0x10"``.  The caller's
    string is never modified.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("ascii", errors="replace")
    text = raw.strip(_WHITESPACE).lower().replace(",", " ")
    return _WHITESPACE_RUN.sub(" ", text).strip(" ")


def tokenize(line: str) -> tuple[str, ...]:
    """Split a normalized line into its tokens."""
    return tuple(line.split(" ")) if line else ()

# ---------------------------------------------------------------------------
#  Operand helpers
# ---------------------------------------------------------------------------

def _parse_reg(tok: str) -> int:
    """'r0'..'r3' -> register index."""
    return int(tok[1:])


def _parse_imm(tok: str) -> int:
    """Parse a decimal or 0x-hex literal, with an optional leading '-'."""
    if tok.startswith("-"):
        return -_parse_imm(tok[1:])
    if tok.startswith("0x"):
        return int(tok, 16)
    return int(tok, 10)


def _word(b0: int, b1: int, b2: int, b3: int) -> bytes:
    """Pack four byte fields, truncating each to 8 bits."""
    return bytes((b0 & 0xFF, b1 & 0xFF, b2 & 0xFF, b3 & 0xFF))


def _relative_step(tok: str) -> tuple[int, int]:
    """Split a relative byte step into (step_in_words, sign_bit).

    The sign comes from bit 7 of the operand, not from the '-' alone:
    ``-8`` and ``0xf8`` both mean "back 2 words".
    """
    step = _parse_imm(tok)
    backwards = (step & 0x80) != 0
    magnitude = (-step if backwards else step) & 0x7F
    return magnitude // WORD_SIZE, int(backwards)

# ---------------------------------------------------------------------------
#  Encoders
#
#  Bit layout comments read byte3..byte0, MSB first:
#    o = opcode, a = ALU op, i = immediate, s/S = source, d = destination
# ---------------------------------------------------------------------------

# oooo 001a  aaa0 iiii  iiii iiii  iiii ssdd
def _alu_immediate(tokens: tuple[str, ...]) -> bytes:
    op = tokens[0]
    dst = _parse_reg(tokens[1])
    if op == "move":
        src, imm_tok = 0, tokens[2]
    else:
        src, imm_tok = _parse_reg(tokens[2]), tokens[3]
    imm = _parse_imm(imm_tok) & 0xFFFF
    alu = ALU_OPS[op]
    return _word(
        (dst & 0x3) | ((src & 0x3) << 2) | ((imm & 0xF) << 4),
        (imm & 0xFF0) >> 4,
        ((alu & 0x7) << 5) | ((imm & 0xF000) >> 12),
        (0x7 << 4) | (1 << 1) | ((alu & 0x8) >> 3),
    )


# oooo 000a  aaa0 0000  0000 0000  00SS ssdd
def _alu_registers(tokens: tuple[str, ...]) -> bytes:
    op = tokens[0]
    dst = _parse_reg(tokens[1])
    src1 = _parse_reg(tokens[2])
    # The IDF toolchain emits Rsrc2 = Rsrc1 for move.
    src2 = src1 if op == "move" else _parse_reg(tokens[3])
    alu = ALU_OPS[op]
    return _word(
        (dst & 0x3) | ((src1 & 0x3) << 2) | ((src2 & 0x3) << 4),
        0x00,
        (alu & 0x7) << 5,
        (0x7 << 4) | ((alu & 0x8) >> 3),
    )


# oooo 010a  aaa0 0000  0000 iiii  iiii 0000
def _stage(tokens: tuple[str, ...]) -> bytes:
    op = STAGE_OPS[tokens[0]]
    imm = _parse_imm(tokens[1]) if len(tokens) > 1 else 0
    return _word(
        (imm & 0x0F) << 4,
        (imm & 0xF0) >> 4,
        (op & 0x7) << 5,
        (0x7 << 4) | (2 << 1) | ((op & 0x8) >> 3),
    )


# oooo 1000  000k kkkk  kkkk kk00  0000 ddss
def _store(tokens: tuple[str, ...]) -> bytes:
    src = _parse_reg(tokens[1])
    dst = _parse_reg(tokens[2])
    offset = _parse_imm(tokens[3]) // WORD_SIZE
    # High offset bits masked with 0x7C0 here but 0x3C0 in ld: kept as
    # the hardware reference encodes them.
    return _word(
        (src & 0x3) | ((dst & 0x3) << 2),
        (offset & 0x03F) << 2,
        (offset & 0x7C0) >> 6,
        (0x6 << 4) | (4 << 1),
    )


# oooo 0000  000k kkkk  kkkk kk00  0000 ddss
def _load(tokens: tuple[str, ...]) -> bytes:
    dst = _parse_reg(tokens[1])
    src = _parse_reg(tokens[2])
    offset = _parse_imm(tokens[3]) // WORD_SIZE
    return _word(
        (dst & 0x3) | ((src & 0x3) << 2),
        (offset & 0x03F) << 2,
        (offset & 0x3C0) >> 6,
        0xD << 4,
    )


# oooo 000t  ttg0 0000  000k kkkk  kkkk kkdd   (g = address in register)
def _jump(tokens: tuple[str, ...]) -> bytes:
    target = tokens[1]
    jump_type = JUMP_TYPES[tokens[2] if len(tokens) > 2 else ""]
    if target.startswith("r"):
        dst, words, in_register = _parse_reg(target), 0, 1
    else:
        dst, words, in_register = 0, _parse_imm(target) // WORD_SIZE, 0
    return _word(
        (dst & 0x3) | ((words & 0x3F) << 2),
        (words & 0x7C0) >> 6,
        ((jump_type & 0x3) << 6) | (in_register << 5),
        (0x8 << 4) | ((jump_type & 0x4) >> 2),
    )


# oooo 001k  ssss sssc  tttt tttt  tttt tttt   (k = PC - step, c = condition)
def _jumpr(tokens: tuple[str, ...]) -> bytes:
    step, backwards = _relative_step(tokens[1])
    threshold = _parse_imm(tokens[2])
    cond = JUMPR_CONDS[tokens[3]]
    return _word(
        threshold & 0xFF,
        (threshold & 0xFF00) >> 8,
        (step << 1) | cond,
        (0x8 << 4) | (1 << 1) | backwards,
    )


# oooo 010k  ssss sssc  c000 0000  tttt tttt
def _jumps(tokens: tuple[str, ...]) -> bytes:
    step, backwards = _relative_step(tokens[1])
    threshold = _parse_imm(tokens[2])
    cond = JUMPS_CONDS[tokens[3]]
    return _word(
        threshold & 0xFF,
        (cond & 0x1) << 7,
        (step << 1) | ((cond & 0x2) >> 1),
        (0x8 << 4) | (2 << 1) | backwards,
    )


def _jumpr_unsupported(tokens: tuple[str, ...]) -> bytes:
    raise UnsupportedVariant(UNSUPPORTED_JUMPR_MESSAGE)


def _jumps_unsupported(tokens: tuple[str, ...]) -> bytes:
    raise UnsupportedVariant(UNSUPPORTED_JUMPS_MESSAGE)


# oooo 0000  0000 0000  0000 0000  0smm mmdd   (s = SAR ADC, m = pad)
def _adc(tokens: tuple[str, ...]) -> bytes:
    dst = _parse_reg(tokens[1])
    sar_sel = _parse_imm(tokens[2])
    pad = _parse_imm(tokens[3])
    return _word((dst & 0x3) | (pad << 2) | ((sar_sel & 0x1) << 6), 0, 0, 0x5 << 4)


# oooo r0ss  sshh hlll  dddd dddd  aaaa aaaa
def _i2c(tokens: tuple[str, ...]) -> bytes:
    write = 1 if tokens[0] == "i2c_wr" else 0
    values = [_parse_imm(t) for t in tokens[1:]]
    if write:
        sub_addr, data, mask_high, mask_low, slave_reg = values
    else:
        sub_addr, mask_high, mask_low, slave_reg = values
        data = 0
    return _word(
        sub_addr & 0xFF,
        data & 0xFF,
        mask_low | (mask_high << 3) | ((slave_reg & 0x3) << 6),
        (0x3 << 4) | (write << 3) | ((slave_reg & 0xC) >> 2),
    )


# oooo hhhh  hlll ll00  0000 00aa  aaaa aaaa
def _reg_rd(tokens: tuple[str, ...]) -> bytes:
    addr, end_bit, start_bit = (_parse_imm(t) for t in tokens[1:])
    return _word(
        addr & 0xFF,
        (addr & 0x300) >> 8,
        (start_bit << 2) | ((end_bit & 0x1) << 7),
        (0x2 << 4) | ((end_bit & 0x1E) >> 1),
    )


# oooo hhhh  hlll lldd  dddd ddaa  aaaa aaaa
def _reg_wr(tokens: tuple[str, ...]) -> bytes:
    addr, end_bit, start_bit, data = (_parse_imm(t) for t in tokens[1:])
    return _word(
        addr & 0xFF,
        ((addr & 0x300) >> 8) | ((data & 0x3F) << 2),
        (start_bit << 2) | ((end_bit & 0x1) << 7) | ((data & 0xC0) >> 6),
        (0x1 << 4) | ((end_bit & 0x1E) >> 1),
    )


def _halt(tokens: tuple[str, ...]) -> bytes:
    return _word(0x00, 0x00, 0x00, 0xB0)


def _wake(tokens: tuple[str, ...]) -> bytes:
    return _word(0x01, 0x00, 0x00, 0x90)


def _sleep(tokens: tuple[str, ...]) -> bytes:
    return _word(_parse_imm(tokens[1]), 0x00, 0x00, 0x92)


def _wait_cycles(cycles: int) -> bytes:
    return _word(cycles & 0xFF, (cycles & 0xFF00) >> 8, 0x00, 0x40)


def _wait(tokens: tuple[str, ...]) -> bytes:
    return _wait_cycles(_parse_imm(tokens[1]))


def _nop(tokens: tuple[str, ...]) -> bytes:
    return _wait_cycles(0)


def _tsens(tokens: tuple[str, ...]) -> bytes:
    dst = _parse_reg(tokens[1])
    cycles = _parse_imm(tokens[2])
    return _word(dst | ((cycles & 0x3F) << 2), (cycles & 0x3FC0) >> 6, 0x00, 0xA0)


def encode_variable(value: int) -> bytes:
    """Encode a 16-bit data word: low byte, high byte, 0, 0."""
    if not 0 <= value <= MAX_VARIABLE:
        raise InvalidOperand(f"variable value {value} out of range [0, {MAX_VARIABLE}]")
    return _word(value & 0xFF, (value >> 8) & 0xFF, 0x00, 0x00)

# ---------------------------------------------------------------------------
#  Instruction pattern table
# ---------------------------------------------------------------------------

REG  = r"r[0-3]"
NUM  = r"(?:0x[0-9a-f]+|[0-9]+)"
SNUM = r"-?" + NUM


@dataclass(frozen=True)
class InstructionPattern:
    """One grammar (anchored to the whole normalized line) and its encoder."""
    grammar: str
    encoder: Callable[[tuple[str, ...]], bytes]
    regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "regex", re.compile(self.grammar))

    @property
    def mnemonic(self) -> str:
        return self.grammar.split(" ", 1)[0]

    def matches(self, line: str) -> bool:
        return self.regex.fullmatch(line) is not None


# First match wins.  Register and immediate forms of one mnemonic only
# stay apart because "r[0-3]" never matches a number.
INSTRUCTIONS: tuple[InstructionPattern, ...] = (
    InstructionPattern(f"add {REG} {REG} {SNUM}",  _alu_immediate),
    InstructionPattern(f"add {REG} {REG} {REG}",   _alu_registers),
    InstructionPattern(f"sub {REG} {REG} {SNUM}",  _alu_immediate),
    InstructionPattern(f"sub {REG} {REG} {REG}",   _alu_registers),
    InstructionPattern(f"and {REG} {REG} {SNUM}",  _alu_immediate),
    InstructionPattern(f"and {REG} {REG} {REG}",   _alu_registers),
    InstructionPattern(f"or {REG} {REG} {SNUM}",   _alu_immediate),
    InstructionPattern(f"or {REG} {REG} {REG}",    _alu_registers),
    InstructionPattern(f"move {REG} {REG}",        _alu_registers),
    InstructionPattern(f"move {REG} {SNUM}",       _alu_immediate),
    InstructionPattern(f"lsh {REG} {REG} {SNUM}",  _alu_immediate),
    InstructionPattern(f"lsh {REG} {REG} {REG}",   _alu_registers),
    InstructionPattern(f"rsh {REG} {REG} {SNUM}",  _alu_immediate),
    InstructionPattern(f"rsh {REG} {REG} {REG}",   _alu_registers),

    InstructionPattern("stage_rst",                _stage),
    InstructionPattern(f"stage_inc {NUM}",         _stage),
    InstructionPattern(f"stage_dec {NUM}",         _stage),

    InstructionPattern(f"st {REG} {REG} {NUM}",    _store),
    InstructionPattern(f"ld {REG} {REG} {NUM}",    _load),

    InstructionPattern(f"jump {REG}",              _jump),
    InstructionPattern(f"jump {REG} (?:eq|ov)",    _jump),
    InstructionPattern(f"jump {NUM}",              _jump),
    InstructionPattern(f"jump {NUM} (?:eq|ov)",    _jump),

    InstructionPattern(f"jumpr {SNUM} {NUM} (?:lt|ge)",     _jumpr),
    InstructionPattern(f"jumpr {SNUM} {NUM} (?:eq|le|gt)",  _jumpr_unsupported),

    InstructionPattern(f"jumps {SNUM} {NUM} (?:lt|le|ge)",  _jumps),
    InstructionPattern(f"jumps {SNUM} {NUM} (?:eq|gt)",     _jumps_unsupported),

    InstructionPattern("halt",                     _halt),
    InstructionPattern("wake",                     _wake),
    InstructionPattern("sleep [0-4]",              _sleep),
    InstructionPattern(f"wait {NUM}",              _wait),
    InstructionPattern("nop",                      _nop),
    InstructionPattern(f"tsens {REG} {NUM}",       _tsens),
    InstructionPattern(f"adc {REG} {NUM} {NUM}",   _adc),
    InstructionPattern(f"i2c_rd {NUM} {NUM} {NUM} {NUM}",        _i2c),
    InstructionPattern(f"i2c_wr {NUM} {NUM} {NUM} {NUM} {NUM}",  _i2c),
    InstructionPattern(f"reg_rd {NUM} {NUM} {NUM}",              _reg_rd),
    InstructionPattern(f"reg_wr {NUM} {NUM} {NUM} {NUM}",        _reg_wr),
)

MNEMONICS = tuple(dict.fromkeys(p.mnemonic for p in INSTRUCTIONS))

_VAR_RE = re.compile(rf"var ?\( ?({NUM}) ?\)")

# ---------------------------------------------------------------------------
#  Dispatch
# ---------------------------------------------------------------------------

def lookup(line: str) -> InstructionPattern:
    """Return the first table entry whose grammar matches *line* exactly."""
    for pattern in INSTRUCTIONS:
        if pattern.matches(line):
            return pattern
    raise UnsupportedCommand(line)


def encode_line(raw: str | bytes) -> bytes:
    """Normalize one line of assembly and encode it into a 4-byte word."""
    line = normalize_line(raw)
    return lookup(line).encoder(tokenize(line))


def parse_variable(line: str) -> Optional[int]:
    """Return the value of a normalized ``var(<uint>)`` line, else None."""
    m = _VAR_RE.fullmatch(line)
    return _parse_imm(m.group(1)) if m else None


def assemble(source: str, listing: bool = False) -> list[bytes]:
    """
    Assemble a multi-line source into a list of 4-byte words.

    One instruction or ``var(<uint>)`` per line; ';' starts a comment.
    If listing=True, print a slot/hex/source listing to stdout.
    """
    words: list[bytes] = []
    listing_lines = []

    for lineno, raw in enumerate(source.split("\n"), 1):
        text = normalize_line(raw.split(";", 1)[0])
        if not text:
            continue
        try:
            value = parse_variable(text)
            word = encode_variable(value) if value is not None else encode_line(text)
        except AsmError as e:
            raise AsmError(str(e), lineno) from e
        if listing:
            listing_lines.append((len(words), word, raw.strip()))
        words.append(word)

    if listing:
        for slot, word, src in listing_lines:
            hexstr = " ".join(f"{b:02X}" for b in word)
            print(f"  {slot:2d}  {hexstr}  {src}")

    return words
