"""
ULP assembler tests: normalizer, pattern table and every encoder's byte layout.
"""
import contextlib
import io
import unittest

from ulp_asm import (
    INSTRUCTIONS, UNSUPPORTED_JUMPR_MESSAGE, UNSUPPORTED_JUMPS_MESSAGE,
    AsmError, InvalidOperand, UnsupportedCommand, UnsupportedVariant,
    assemble, encode_line, encode_variable, lookup, normalize_line,
    parse_variable, tokenize,
)


def w(*octets: int) -> bytes:
    return bytes(octets)


class TestNormalizer(unittest.TestCase):
    def test_trim_lower_and_collapse(self):
        self.assertEqual(normalize_line("  ADD R0,R1 , 5\t"), "add r0 r1 5")

    def test_commas_become_separators(self):
        self.assertEqual(normalize_line("st r0,r1,,8"), "st r0 r1 8")

    def test_trailing_comma(self):
        self.assertEqual(normalize_line("halt,"), "halt")

    def test_cr_lf_and_tabs(self):
        self.assertEqual(normalize_line("\tWAIT\t\t10\r\n"), "wait 10")

    def test_bytes_input(self):
        self.assertEqual(normalize_line(b"HALT\r\n"), "halt")

    def test_empty(self):
        self.assertEqual(normalize_line(""), "")
        self.assertEqual(normalize_line(" \t , "), "")

    def test_input_not_modified(self):
        raw = "  Move R1, 2 "
        normalize_line(raw)
        self.assertEqual(raw, "  Move R1, 2 ")

    def test_tokenize(self):
        self.assertEqual(tokenize("add r0 r1 5"), ("add", "r0", "r1", "5"))
        self.assertEqual(tokenize(""), ())


class TestPatternTable(unittest.TestCase):
    SAMPLES = [
        "add r0 r1 5", "add r0 r1 r2", "sub r0 r1 -3", "sub r0 r1 r2",
        "and r0 r1 0xff", "and r0 r1 r2", "or r0 r1 1", "or r0 r1 r2",
        "move r0 r1", "move r0 7", "lsh r0 r1 2", "lsh r0 r1 r2",
        "rsh r0 r1 2", "rsh r0 r1 r2", "stage_rst", "stage_inc 1",
        "stage_dec 1", "st r0 r1 4", "ld r0 r1 4", "jump r1", "jump r1 eq",
        "jump 8", "jump 8 ov", "jumpr 4 1 lt", "jumpr 4 1 gt",
        "jumps 4 1 le", "jumps 4 1 eq", "halt", "wake", "sleep 1",
        "wait 5", "nop", "tsens r0 10", "adc r0 0 1", "i2c_rd 1 7 0 0",
        "i2c_wr 1 2 7 0 0", "reg_rd 1 2 3", "reg_wr 1 2 3 4",
    ]

    def test_every_sample_matches_exactly_one_entry(self):
        for line in self.SAMPLES:
            hits = [p.grammar for p in INSTRUCTIONS if p.matches(line)]
            self.assertEqual(len(hits), 1, f"{line!r} matched {hits}")

    def test_register_and_immediate_forms_are_distinct(self):
        self.assertNotEqual(lookup("move r1 r2").encoder, lookup("move r1 2").encoder)
        self.assertNotEqual(lookup("add r1 r2 r3").encoder, lookup("add r1 r2 3").encoder)

    def test_unknown_mnemonic(self):
        with self.assertRaises(UnsupportedCommand) as cm:
            encode_line("bogus r0")
        self.assertEqual(cm.exception.text, "bogus r0")

    def test_whole_line_must_match(self):
        for line in ("halt now", "xhalt", "nop 1", "move r0", "add r0 r1"):
            with self.assertRaises(UnsupportedCommand, msg=line):
                encode_line(line)

    def test_register_range(self):
        with self.assertRaises(UnsupportedCommand):
            encode_line("move r4, 1")

    def test_unsigned_fields_reject_minus(self):
        with self.assertRaises(UnsupportedCommand):
            encode_line("st r0, r1, -4")
        with self.assertRaises(UnsupportedCommand):
            encode_line("wait -1")

    def test_empty_line_is_not_an_instruction(self):
        with self.assertRaises(UnsupportedCommand):
            encode_line("")

    def test_idempotent(self):
        for line in self.SAMPLES:
            try:
                first = encode_line(line)
            except UnsupportedVariant:
                continue
            self.assertEqual(first, encode_line(line))


class TestFixedEncodings(unittest.TestCase):
    def test_halt(self):
        self.assertEqual(encode_line("halt"), w(0x00, 0x00, 0x00, 0xB0))

    def test_wake(self):
        self.assertEqual(encode_line("wake"), w(0x01, 0x00, 0x00, 0x90))

    def test_nop(self):
        self.assertEqual(encode_line("nop"), w(0x00, 0x00, 0x00, 0x40))

    def test_sleep(self):
        self.assertEqual(encode_line("sleep 2"), w(0x02, 0x00, 0x00, 0x92))
        self.assertEqual(encode_line("sleep 4"), w(0x04, 0x00, 0x00, 0x92))

    def test_sleep_out_of_range(self):
        with self.assertRaises(UnsupportedCommand):
            encode_line("sleep 5")

    def test_wait(self):
        self.assertEqual(encode_line("wait 1000"), w(0xE8, 0x03, 0x00, 0x40))
        self.assertEqual(encode_line("wait 0"), encode_line("nop"))

    def test_decimal_with_leading_zero(self):
        self.assertEqual(encode_line("wait 010"), w(0x0A, 0x00, 0x00, 0x40))

    def test_tsens(self):
        self.assertEqual(encode_line("tsens r1, 0x100"), w(0x01, 0x04, 0x00, 0xA0))
        self.assertEqual(encode_line("tsens r2, 5"), w(0x16, 0x00, 0x00, 0xA0))


class TestAluEncoding(unittest.TestCase):
    def test_add_immediate(self):
        self.assertEqual(encode_line("add r1, r2, 0x123"), w(0x39, 0x12, 0x00, 0x72))

    def test_sub_negative_immediate(self):
        """Signed immediates are stored as 16-bit two's complement."""
        self.assertEqual(encode_line("sub r0, r3, -1"), w(0xFC, 0xFF, 0x2F, 0x72))

    def test_move_immediate(self):
        self.assertEqual(encode_line("move r2, 100"), w(0x42, 0x06, 0x80, 0x72))

    def test_lsh_immediate(self):
        self.assertEqual(encode_line("lsh r0 r0 4"), w(0x40, 0x00, 0xA0, 0x72))

    def test_add_registers(self):
        self.assertEqual(encode_line("add r0, r1, r2"), w(0x24, 0x00, 0x00, 0x70))

    def test_move_registers_copies_source(self):
        """move sets Rsrc2 = Rsrc1."""
        self.assertEqual(encode_line("move r3, r1"), w(0x17, 0x00, 0x80, 0x70))

    def test_rsh_registers(self):
        self.assertEqual(encode_line("rsh r1, r1, r3"), w(0x35, 0x00, 0xC0, 0x70))

    def test_immediate_truncated_to_16_bits(self):
        self.assertEqual(encode_line("move r0, 0x10010"), encode_line("move r0, 0x10"))

    def test_stage_ops(self):
        self.assertEqual(encode_line("stage_rst"), w(0x00, 0x00, 0x40, 0x74))
        self.assertEqual(encode_line("stage_inc 0x25"), w(0x50, 0x02, 0x00, 0x74))
        self.assertEqual(encode_line("stage_dec 1"), w(0x10, 0x00, 0x20, 0x74))


class TestMemoryEncoding(unittest.TestCase):
    def test_store(self):
        self.assertEqual(encode_line("st r1, r2, 8"), w(0x09, 0x08, 0x00, 0x68))

    def test_load(self):
        self.assertEqual(encode_line("ld r2, r1, 12"), w(0x06, 0x0C, 0x00, 0xD0))

    def test_store_and_load_high_offset_masks_differ(self):
        """st keeps five high offset bits (0x7C0), ld only four (0x3C0)."""
        self.assertEqual(encode_line("st r0, r0, 7936"), w(0x00, 0x00, 0x1F, 0x68))
        self.assertEqual(encode_line("ld r0, r0, 7936"), w(0x00, 0x00, 0x0F, 0xD0))


class TestJumpEncoding(unittest.TestCase):
    def test_jump_register(self):
        self.assertEqual(encode_line("jump r1"), w(0x01, 0x00, 0x20, 0x80))

    def test_jump_register_overflow(self):
        self.assertEqual(encode_line("jump r2, ov"), w(0x02, 0x00, 0xA0, 0x80))

    def test_jump_immediate(self):
        self.assertEqual(encode_line("jump 400"), w(0x90, 0x01, 0x00, 0x80))

    def test_jump_immediate_equal(self):
        self.assertEqual(encode_line("jump 0x40, eq"), w(0x40, 0x00, 0x40, 0x80))

    def test_jumpr_backwards(self):
        word = encode_line("jumpr -8, 1, lt")
        self.assertEqual(word, w(0x01, 0x00, 0x04, 0x83))
        self.assertEqual(word[3] & 0x1, 1)          # PC - step
        self.assertEqual(word[2] >> 1, 2)           # 2 words
        self.assertEqual(word[2] & 0x1, 0)          # lt

    def test_jumpr_sign_from_bit_7(self):
        self.assertEqual(encode_line("jumpr 0xf8, 1, lt"), encode_line("jumpr -8, 1, lt"))

    def test_jumpr_forward_ge(self):
        self.assertEqual(encode_line("jumpr 16, 0x1234, ge"), w(0x34, 0x12, 0x09, 0x82))

    def test_jumps(self):
        self.assertEqual(encode_line("jumps 12, 5, le"), w(0x05, 0x00, 0x07, 0x84))
        self.assertEqual(encode_line("jumps -4, 10, ge"), w(0x0A, 0x80, 0x02, 0x85))
        self.assertEqual(encode_line("jumps -4, 10, lt"), w(0x0A, 0x00, 0x02, 0x85))

    def test_jumpr_unsupported_conditions(self):
        for cond in ("eq", "le", "gt"):
            with self.assertRaises(UnsupportedVariant) as cm:
                encode_line(f"jumpr 8, 1, {cond}")
            self.assertEqual(str(cm.exception), UNSUPPORTED_JUMPR_MESSAGE)
            self.assertIn('"lt" or "ge"', str(cm.exception))

    def test_jumps_unsupported_conditions(self):
        for cond in ("eq", "gt"):
            with self.assertRaises(UnsupportedVariant) as cm:
                encode_line(f"jumps 8, 1, {cond}")
            self.assertEqual(str(cm.exception), UNSUPPORTED_JUMPS_MESSAGE)

    def test_unknown_condition(self):
        with self.assertRaises(UnsupportedCommand):
            encode_line("jumpr 8, 1, ne")


class TestPeripheralEncoding(unittest.TestCase):
    def test_adc(self):
        self.assertEqual(encode_line("adc r1, 1, 3"), w(0x4D, 0x00, 0x00, 0x50))
        self.assertEqual(encode_line("adc r0, 0, 9"), w(0x24, 0x00, 0x00, 0x50))

    def test_i2c_read(self):
        self.assertEqual(encode_line("i2c_rd 0x10, 7, 0, 1"), w(0x10, 0x00, 0x78, 0x30))

    def test_i2c_write(self):
        self.assertEqual(encode_line("i2c_wr 0x20, 0xab, 7, 0, 5"), w(0x20, 0xAB, 0x78, 0x39))

    def test_reg_rd(self):
        self.assertEqual(encode_line("reg_rd 0x120, 7, 4"), w(0x20, 0x01, 0x90, 0x23))

    def test_reg_wr(self):
        self.assertEqual(encode_line("reg_wr 6, 24, 24, 0"), w(0x06, 0x00, 0x60, 0x1C))
        self.assertEqual(encode_line("reg_wr 0x301, 17, 16, 0xff"), w(0x01, 0xFF, 0xC3, 0x18))


class TestVariables(unittest.TestCase):
    def test_encode_variable(self):
        self.assertEqual(encode_variable(100), w(0x64, 0x00, 0x00, 0x00))
        self.assertEqual(encode_variable(0xBEEF), w(0xEF, 0xBE, 0x00, 0x00))

    def test_out_of_range(self):
        with self.assertRaises(InvalidOperand):
            encode_variable(65536)
        with self.assertRaises(InvalidOperand):
            encode_variable(-1)

    def test_parse_variable(self):
        self.assertEqual(parse_variable("var(100)"), 100)
        self.assertEqual(parse_variable("var (0x10)"), 16)
        self.assertIsNone(parse_variable("var(-1)"))
        self.assertIsNone(parse_variable("var 5"))


class TestAssemble(unittest.TestCase):
    def test_comments_and_blank_lines(self):
        words = assemble("halt ; stop\n\n   ; nothing\nMOVE R0, 1\nvar(7)\n")
        self.assertEqual(words, [encode_line("halt"), encode_line("move r0 1"),
                                 encode_variable(7)])

    def test_error_carries_line_number(self):
        with self.assertRaises(AsmError) as cm:
            assemble("nop\nbogus\n")
        self.assertEqual(cm.exception.line, 2)
        self.assertTrue(str(cm.exception).startswith("Line 2:"))

    def test_variable_range_error(self):
        with self.assertRaises(AsmError) as cm:
            assemble("var(70000)")
        self.assertEqual(cm.exception.line, 1)

    def test_listing(self):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            assemble("nop\nhalt", listing=True)
        lines = out.getvalue().splitlines()
        self.assertEqual(len(lines), 2)
        self.assertIn("00 00 00 B0", lines[1])
        self.assertIn("halt", lines[1])


if __name__ == "__main__":
    unittest.main()
