#!/usr/bin/env python3
"""
ESP32 ULP Monitor / CLI
========================
Interactive command-line interface for building ULP programs one line at a
time and handing them to the coprocessor.

Provides:
  - Line-by-line assembly into a fixed 50-slot program
  - 16-bit data words (var)
  - Run: halt epilogue + image header, load, start at a slot
  - Listing of the program resident in coprocessor memory
  - Assemble-only mode writing a ulp_load_binary() image

Usage:
  python ulp_cli.py [--reserve BYTES] [--image PATH] [--script FILE]
  python ulp_cli.py --assemble SRC OUT [--listing]
"""

from __future__ import annotations
import argparse
import cmd
import readline
import sys
from typing import Optional

from ulp_asm import (
    ALU_OPS, STAGE_OPS, JUMPS_CONDS, WORD_SIZE,
    AsmError, assemble, normalize_line, parse_variable,
)
from ulp_session import ProgramSession, SessionError
from ulp_loader import (
    DEFAULT_RESERVE_MEM, ImageFileLoader, LoaderError, RtcSlowMemory, UlpLoader,
)

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

ALU_NAMES = {v: k for k, v in ALU_OPS.items()}
STAGE_NAMES = {v: k for k, v in STAGE_OPS.items()}
JUMP_COND_NAMES = {0: "", 1: "eq", 2: "ov"}
JUMPS_COND_NAMES = {v: k for k, v in JUMPS_CONDS.items()}


def disasm_word(word: bytes) -> str:
    """Render one 4-byte word as assembler text."""
    b0, b1, b2, b3 = word
    op = b3 >> 4
    sub = (b3 >> 1) & 0x7

    if op == 0x0 and b2 == 0 and b3 == 0:
        return f"var({b0 | (b1 << 8)})"

    if op == 0x7:
        alu = ((b2 >> 5) & 0x7) | ((b3 & 0x1) << 3)
        rd, rs = b0 & 0x3, (b0 >> 2) & 0x3
        if sub == 2:
            name = STAGE_NAMES.get(alu, f"stage.{alu}")
            if name == "stage_rst":
                return name
            return f"{name} {(b0 >> 4) | ((b1 & 0xF) << 4)}"
        name = ALU_NAMES.get(alu, f"alu.{alu}")
        if sub == 1:
            imm = (b0 >> 4) | (b1 << 4) | ((b2 & 0xF) << 12)
            if name == "move":
                return f"move r{rd}, {imm:#x}"
            return f"{name} r{rd}, r{rs}, {imm:#x}"
        if sub == 0:
            if name == "move":
                return f"move r{rd}, r{rs}"
            return f"{name} r{rd}, r{rs}, r{(b0 >> 4) & 0x3}"

    elif op == 0x6 and sub == 4:
        offset = ((b1 >> 2) & 0x3F) | ((b2 & 0x1F) << 6)
        return f"st r{b0 & 0x3}, r{(b0 >> 2) & 0x3}, {offset * WORD_SIZE}"

    elif op == 0xD:
        offset = ((b1 >> 2) & 0x3F) | ((b2 & 0xF) << 6)
        return f"ld r{b0 & 0x3}, r{(b0 >> 2) & 0x3}, {offset * WORD_SIZE}"

    elif op == 0x8:
        if sub == 0:
            jump_type = ((b2 >> 6) & 0x3) | ((b3 & 0x1) << 2)
            cond = JUMP_COND_NAMES.get(jump_type, f"?{jump_type}")
            if b2 & 0x20:
                target = f"r{b0 & 0x3}"
            else:
                target = str(((b0 >> 2) | ((b1 & 0x1F) << 6)) * WORD_SIZE)
            return f"jump {target}, {cond}" if cond else f"jump {target}"
        step = ((b2 >> 1) & 0x7F) * WORD_SIZE
        if b3 & 0x1:
            step = -step
        if sub == 1:
            cond = "ge" if b2 & 0x1 else "lt"
            return f"jumpr {step}, {b0 | (b1 << 8)}, {cond}"
        if sub == 2:
            c = ((b1 >> 7) & 0x1) | ((b2 & 0x1) << 1)
            return f"jumps {step}, {b0}, {JUMPS_COND_NAMES.get(c, f'?{c}')}"

    elif op == 0x5:
        return f"adc r{b0 & 0x3}, {(b0 >> 6) & 0x1}, {(b0 >> 2) & 0xF}"

    elif op == 0x3:
        high, low = (b2 >> 3) & 0x7, b2 & 0x7
        slave = ((b2 >> 6) & 0x3) | ((b3 & 0x3) << 2)
        if b3 & 0x8:
            return f"i2c_wr {b0:#x}, {b1:#x}, {high}, {low}, {slave}"
        return f"i2c_rd {b0:#x}, {high}, {low}, {slave}"

    elif op in (0x1, 0x2):
        addr = b0 | ((b1 & 0x3) << 8)
        start = (b2 >> 2) & 0x1F
        end = ((b2 >> 7) & 0x1) | ((b3 & 0xF) << 1)
        if op == 0x2:
            return f"reg_rd {addr:#x}, {end}, {start}"
        data = ((b1 >> 2) & 0x3F) | ((b2 & 0x3) << 6)
        return f"reg_wr {addr:#x}, {end}, {start}, {data:#x}"

    elif op == 0xB:
        return "halt"

    elif op == 0x9:
        if b3 == 0x90:
            return "wake"
        if b3 == 0x92:
            return f"sleep {b0}"

    elif op == 0x4:
        cycles = b0 | (b1 << 8)
        return f"wait {cycles}" if cycles else "nop"

    elif op == 0xA:
        return f"tsens r{b0 & 0x3}, {(b0 >> 2) | (b1 << 6)}"

    return f"??? {word.hex(' ')}"


# ---------------------------------------------------------------------------
#  CLI
# ---------------------------------------------------------------------------

USAGE = """\
Commands:
  <instruction>     append one ULP instruction, e.g.  move r0, 0x10
  var(<n>)          append a 16-bit data word, n = 0..65535
  run [slot]        add halt epilogue, load and start at slot (default 0)
  list              show the program resident in coprocessor memory
  reset             clear the program
  help              show this text (also: empty line)
  quit              exit

Instructions (offsets and jump targets in bytes):
  add|sub|and|or|lsh|rsh rD, rS, rS2|imm      move rD, rS|imm
  stage_rst      stage_inc n      stage_dec n
  st rS, rD, offset                 ld rD, rS, offset
  jump rN|addr [, eq|ov]
  jumpr step, threshold, lt|ge      jumps step, threshold, lt|le|ge
  halt   wake   sleep 0..4   wait cycles   nop   tsens rD, cycles
  adc rD, sar_sel, pad
  i2c_rd sub_addr, mask_high, mask_low, slave
  i2c_wr sub_addr, data, mask_high, mask_low, slave
  reg_rd addr, end_bit, start_bit   reg_wr addr, end_bit, start_bit, data
"""


class UlpCLI(cmd.Cmd):
    """Interactive program builder for the ESP32 ULP coprocessor."""

    intro = (
        "\n"
        "╔══════════════════════════════════════════════════════════╗\n"
        "║          ESP32 ULP Monitor                               ║\n"
        "║   Type 'help' for commands.  'quit' to exit.             ║\n"
        "╚══════════════════════════════════════════════════════════╝\n"
    )
    prompt = "ULP> "

    def __init__(self, session: Optional[ProgramSession] = None,
                 loader: Optional[UlpLoader] = None, stdin=None):
        super().__init__(stdin=stdin)
        self.session = session if session is not None else ProgramSession()
        self.loader = loader if loader is not None else RtcSlowMemory()
        if stdin is not None:
            # Scripted input: no prompt or banner echo
            self.use_rawinput = False
            self.prompt = ""
            self.intro = ""

    # -- Parsing helpers --

    def precmd(self, line):
        if line == "EOF":
            return line
        return normalize_line(line)

    def _parse_int(self, s: str) -> int:
        s = s.strip()
        return int(s, 16) if s.startswith("0x") else int(s, 10)

    def _print_word(self, index: int, word: bytes):
        raw = " ".join(f"{b:02x}" for b in word)
        print(f"  {index:2d}: {raw}  {disasm_word(word)}")

    # ================================================================
    #  Commands
    # ================================================================

    def default(self, line):
        """Anything that is not a command is one instruction."""
        try:
            index = self.session.append_instruction(line)
        except (AsmError, SessionError) as e:
            print(f"Error: {e}")
            return
        self._print_word(index, self.session.slots[index])

    def do_var(self, arg):
        """Append a data word: var(<0..65535>)"""
        value = parse_variable("var" + arg)
        if value is None:
            print("Usage: var(<0..65535>)")
            return
        try:
            index = self.session.append_variable(value)
        except (AsmError, SessionError) as e:
            print(f"Error: {e}")
            return
        self._print_word(index, self.session.slots[index])

    def do_run(self, arg):
        """Load the program and start it: run [slot]"""
        try:
            start = self._parse_int(arg) if arg.strip() else 0
        except ValueError:
            print("Usage: run [slot]")
            return
        try:
            request = self.session.finalize_for_run(start)
        except SessionError as e:
            print(f"Error: {e}")
            return
        try:
            self.loader.load_image(request.image)
            self.loader.start(request.entry)
        except LoaderError as e:
            self.session.invalidate()
            print(f"Loader error: {e}")
            return
        words = request.header.text_size // WORD_SIZE
        print(f"Loaded {len(request.image)} bytes ({words} words) into "
              f"{self.loader.name}, started at slot {request.entry}")

    def do_list(self, arg):
        """Show the program resident in coprocessor memory."""
        try:
            words = self.session.list_snapshot(self.loader.read_memory)
        except (SessionError, LoaderError) as e:
            print(f"Error: {e}")
            return
        if not words:
            print("Program is empty.")
            return
        for index, word in enumerate(words):
            self._print_word(index, word)

    def do_reset(self, arg):
        """Clear the program."""
        self.session.reset()
        print("Program cleared.")

    def do_help(self, arg):
        """Show usage."""
        print(USAGE, end="")

    def do_quit(self, arg):
        """Exit the monitor."""
        print("Goodbye.")
        return True
    do_exit = do_quit
    do_q = do_quit

    def do_EOF(self, arg):
        print()
        return self.do_quit(arg)

    def emptyline(self):
        """An empty line shows the usage text."""
        self.do_help("")


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None):
    parser = argparse.ArgumentParser(
        description="ESP32 ULP Monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python ulp_cli.py\n"
               "  python ulp_cli.py --image ulp_main.bin\n"
               "  python ulp_cli.py --script blink.ulp\n"
               "  python ulp_cli.py --assemble blink.ulp ulp_main.bin --listing\n"
    )
    parser.add_argument("--reserve", type=int, default=DEFAULT_RESERVE_MEM,
                        metavar="BYTES",
                        help=f"RTC slow memory reserved for the ULP "
                             f"(default: {DEFAULT_RESERVE_MEM})")
    parser.add_argument("--image", type=str, default=None, metavar="PATH",
                        help="Write every image handed to the loader to PATH")
    parser.add_argument("--script", type=str, default=None, metavar="FILE",
                        help="Read monitor commands from FILE instead of the terminal")
    parser.add_argument("--assemble", nargs=2, metavar=("SRC", "OUT"),
                        help="Assemble SRC into a ULP image at OUT and exit")
    parser.add_argument("--listing", "-l", action="store_true",
                        help="Print assembly listing (with --assemble)")
    args = parser.parse_args(argv)

    # ---- Assemble-only mode -------------------------------------------
    if args.assemble:
        src_path, out_path = args.assemble
        with open(src_path, "r") as f:
            source = f.read()
        session = ProgramSession()
        try:
            for word in assemble(source, listing=args.listing):
                session.append_word(word)
            request = session.finalize_for_run(0)
        except (AsmError, SessionError) as e:
            print(f"Assembly error: {e}", file=sys.stderr)
            sys.exit(1)
        with open(out_path, "wb") as f:
            f.write(request.image)
        print(f"Assembled {src_path} → {out_path} ({len(request.image)} bytes)")
        return

    try:
        if args.image:
            loader = ImageFileLoader(args.image, reserve_mem=args.reserve)
        else:
            loader = RtcSlowMemory(reserve_mem=args.reserve)
    except ValueError as e:
        parser.error(str(e))

    if args.script:
        with open(args.script, "r") as f:
            UlpCLI(loader=loader, stdin=f).cmdloop()
        return

    cli = UlpCLI(loader=loader)
    try:
        cli.cmdloop()
    except KeyboardInterrupt:
        print("\nInterrupted. Goodbye.")


if __name__ == "__main__":
    main()
