"""
Tests for the instruction model: decoding, encoding, editing and the assembler.
"""
import pytest

from neurassembly.errors import AssemblyError, DecodeError, IntegrityViolation, UnsupportedArchitecture
from neurassembly.isa.asm import assemble, parse_instructions
from neurassembly.isa.codec import decode, encode, get_architecture, splice
from neurassembly.isa.instruction import END_UID, ControlKind, Hazard
from neurassembly.isa.operands import Imm, Mem, Reg


ROUND_TRIP_PROGRAM = """
start:
    push rbp
    mov rbp, rsp
    mov qword ptr [rbp-0x8], rdi
    mov rax, qword ptr [rbp-0x8]
    lea rcx, [rax+rbx*4+0x10]
    add rax, 0x1000
    sub rcx, 1
    imul rdx, rcx, 12
    shl rax, 3
    sar rdx, 1
    test rax, rax
    je done            ; forward branch
    mov r12d, 0xdeadbeef
    mov r15, 0x1122334455667788
    mov rax, qword ptr [rel 0x2000]
    jmp start          # backward branch
done:
    pop rbp
    ret
"""


class TestDecode:
    """Test decoding raw bytes."""

    def test_decode_known_bytes(self):
        """Test that hand-written encodings decode to the expected operands."""
        seq = decode(bytes.fromhex("4889d8" "31c0" "4c8b4df8" "c3"), base_address=0x400000)
        assert [ins.mnemonic for ins in seq] == ["mov", "xor", "mov", "ret"]
        assert seq[0].operands == (Reg("rax"), Reg("rbx"))
        assert seq[1].operands == (Reg("rax", 32), Reg("rax", 32))
        assert seq[2].operands == (Reg("r9"), Mem(64, base="rbp", disp=-8))
        assert [ins.address for ins in seq] == [0x400000, 0x400003, 0x400005, 0x400009]
        assert seq.end_address == 0x40000A

    def test_effects_are_annotated(self):
        """Test that decoded instructions carry their effect descriptors."""
        seq = decode(bytes.fromhex("4801d8" "0f05"))
        add, syscall = seq
        assert add.effects.reads == {"rax", "rbx"}
        assert add.effects.writes == {"rax"}
        assert "cf" in add.effects.flags_written
        assert syscall.effects.hazard == Hazard.SYSCALL
        assert syscall.effects.is_barrier

    def test_zero_idiom_has_no_input(self):
        """Test that xor r, r does not read its register."""
        (xor,) = decode(bytes.fromhex("31c0"))
        assert "rax" not in xor.effects.reads
        assert xor.effects.writes == {"rax"}

    def test_unknown_opcode_of_known_length_is_opaque(self):
        """Test that movzx decodes but is flagged as unmodeled."""
        (movzx,) = decode(bytes.fromhex("0fb6c0"))
        assert movzx.form == "opaque"
        assert movzx.length == 3
        assert movzx.effects.unknown
        assert movzx.effects.is_barrier

    def test_legacy_prefix_makes_instruction_opaque(self):
        """Test that a rep-prefixed mov is not modeled."""
        (ins,) = decode(bytes.fromhex("f34889d8"))
        assert ins.effects.unknown

    def test_operand_size_nop_stays_modeled(self):
        """Test that 0x66-padded nops are still nops."""
        (nop,) = decode(bytes.fromhex("6690"))
        assert nop.mnemonic == "nop"
        assert not nop.effects.unknown

    def test_branch_into_instruction_is_rejected(self):
        """Test that a branch landing inside an instruction raises DecodeError."""
        with pytest.raises(DecodeError) as excinfo:
            decode(bytes.fromhex("eb01" "4889d8"))
        assert excinfo.value.offset == 0

    def test_truncated_instruction(self):
        """Test that a truncated encoding reports its offset."""
        with pytest.raises(DecodeError) as excinfo:
            decode(bytes.fromhex("90" "4889"))
        assert excinfo.value.offset == 1

    def test_unsupported_opcode(self):
        """Test that an opcode outside the tables is an invalid encoding."""
        with pytest.raises(DecodeError):
            decode(bytes.fromhex("d8c0"))

    def test_unsupported_architecture(self):
        """Test that unknown architectures are refused."""
        with pytest.raises(UnsupportedArchitecture):
            decode(b"\x90", arch="arm64")

    def test_architecture_aliases(self):
        """Test that x86-64 aliases resolve to the same collaborator."""
        assert get_architecture("amd64") is get_architecture("x86_64")
        assert get_architecture("x86-64").name == "x86_64"

    def test_branch_targets_resolve_to_uids(self, program):
        """Test that in-range targets point at instruction uids and the end at END_UID."""
        seq = program("""
            top:
                dec rcx
                jne top
                jmp out
            out:
        """)
        dec, jne, jmp = seq
        assert jne.target_uid == dec.uid
        assert jmp.target_uid == END_UID
        assert jne.effects.control == ControlKind.BRANCH
        assert jmp.effects.control == ControlKind.JUMP

    def test_rip_reference_into_code_is_a_hazard(self):
        """Test that a RIP-relative store into the code region is self-modifying."""
        # mov qword ptr [rip+0], rax ; targets the next instruction
        seq = decode(bytes.fromhex("48890500000000" "90"))
        assert seq[0].effects.hazard == Hazard.SELF_MODIFYING


class TestEncode:
    """Test encoding and round trips."""

    def test_round_trip(self, program):
        """Test that decode(encode(s)) reproduces the sequence byte for byte."""
        seq = program(ROUND_TRIP_PROGRAM)
        code = encode(seq)
        again = decode(code, base_address=seq.base_address)
        assert again.instructions == seq.instructions
        assert encode(again) == code

    def test_assembler_encodings(self):
        """Test canonical encodings chosen by the assembler."""
        assert assemble("mov rax, rbx") == bytes.fromhex("4889d8")
        assert assemble("xor eax, eax") == bytes.fromhex("31c0")
        assert assemble("mov r9, qword ptr [rbp-0x8]") == bytes.fromhex("4c8b4df8")
        assert assemble("ret") == bytes.fromhex("c3")
        assert assemble("add rax, 1") == bytes.fromhex("4883c001")

    def test_condition_aliases(self, program):
        """Test that jz assembles as je."""
        seq = program("jz next\nnext:\nnop")
        assert seq[0].mnemonic == "je"

    def test_relocation_patched_after_move(self, program):
        """Test that RIP-relative operands keep their absolute target when code moves."""
        seq = program("nop\nmov rax, qword ptr [rel 0x9000]")
        moved = splice(seq, 0, 1, [])
        load = moved[0]
        assert load.address == seq.base_address
        assert load.operands[1].target == 0x9000
        redecoded = decode(encode(moved), base_address=seq.base_address)
        assert redecoded[0].operands[1].target == 0x9000


class TestSplice:
    """Test editing sequences with branch fix-ups."""

    def test_short_branch_is_widened(self, program):
        """Test branch relaxation when an edit pushes the target out of rel8 range."""
        text = "\n".join(["jmp done"] + ["nop"] * 120 + ["done:", "ret"])
        seq = program(text)
        assert seq[0].form == "EB"

        edited = splice(seq, 1, 2, parse_instructions(["mov rax, 0x1122334455667788"]))
        assert edited[0].form == "E9"
        assert edited[0].length == 5
        assert edited[0].branch_target == edited[-1].address
        assert edited[-1].mnemonic == "ret"
        redecoded = decode(encode(edited), base_address=seq.base_address)
        assert redecoded.instructions == edited.instructions

    def test_backward_branch_follows_replacement(self, program):
        """Test that a branch to the first replaced instruction moves to the replacement."""
        seq = program("""
            top:
                add rax, 1
                cmp rax, rbx
                jne top
                ret
        """)
        edited = splice(seq, 0, 1, parse_instructions(["inc rax"]))
        inc, _, jne, _ = edited
        assert inc.mnemonic == "inc"
        assert jne.target_uid == inc.uid
        assert jne.branch_target == inc.address == seq.base_address

    def test_removed_target_redirects_to_successor(self, program):
        """Test that deleting a branch target redirects to the following instruction."""
        seq = program("""
            top:
                nop
                cmp rax, rbx
                jne top
        """)
        edited = splice(seq, 0, 1, [])
        cmp, jne = edited
        assert jne.target_uid == cmp.uid
        assert jne.branch_target == cmp.address

    def test_branch_into_removed_window(self, program):
        """Test that removing an inner branch target violates integrity."""
        seq = program("""
                mov rax, 1
            inner:
                add rax, 2
                jne inner
        """)
        with pytest.raises(IntegrityViolation):
            splice(seq, 0, 2, [])

    def test_uids_survive_edits(self, program):
        """Test that untouched instructions keep their uids."""
        seq = program("mov rax, rbx\nmov rcx, rdx\nmov rsi, rdi")
        edited = splice(seq, 1, 2, parse_instructions(["mov rcx, rdx", "nop"]))
        assert edited[0].uid == seq[0].uid
        assert edited[-1].uid == seq[-1].uid
        assert edited[1].uid != seq[1].uid


class TestAssembler:
    """Test the Intel-syntax assembler."""

    def test_unknown_mnemonic(self):
        """Test that unsupported instructions raise AssemblyError."""
        with pytest.raises(AssemblyError):
            assemble("frobnicate rax")

    def test_unknown_label(self):
        """Test that undefined labels raise AssemblyError."""
        with pytest.raises(AssemblyError):
            assemble("jmp nowhere")

    def test_labels_not_allowed_in_replacements(self):
        """Test that parse_instructions refuses labels."""
        with pytest.raises(AssemblyError):
            parse_instructions(["jmp somewhere"])

    def test_assembly_error_is_value_error(self):
        """Test that AssemblyError can be caught as ValueError."""
        with pytest.raises(ValueError):
            parse_instructions(["mov rax,"])

    def test_comments_and_blank_lines(self):
        """Test that comments and blank lines are skipped."""
        instructions = parse_instructions(["; comment", "", "mov eax, 8  # trailing"])
        assert len(instructions) == 1
        assert instructions[0].operands == (Reg("rax", 32), Imm(8))
