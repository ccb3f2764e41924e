"""
Tests for the command-line entry point.
"""
from unittest.mock import MagicMock

import pytest

from neurassembly import __main__ as cli
from neurassembly.isa.asm import assemble
from neurassembly.isa.operands import ALL_FLAGS, ALL_REGISTERS


class RecordingProposer:
    """Stands in for GeminiProposer and remembers how it was built."""

    name = "recording"
    created = []

    def __init__(self, client, model):
        self.client = client
        self.model = model
        RecordingProposer.created.append(self)

    def infer(self, context):
        return []


@pytest.fixture
def source(tmp_path):
    path = tmp_path / "region.s"
    path.write_text("mov rbx, rbx\nadd rax, 1\nret\n", encoding="utf-8")
    return path


@pytest.fixture
def recording(monkeypatch):
    RecordingProposer.created = []
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    monkeypatch.setattr(cli.genai, "Client", MagicMock(name="Client"))
    monkeypatch.setattr(cli, "GeminiProposer", RecordingProposer)
    return RecordingProposer.created


class TestMain:
    """Test running the CLI end to end."""

    def test_optimizes_assembly_input(self, source, tmp_path, recording):
        """Test that an assembly file is optimized and written out."""
        output = tmp_path / "region.bin"
        assert cli.main([str(source), "--samples", "64", "--output", str(output)]) == 0
        assert output.read_bytes() == assemble("inc rax\nret", 0)

    def test_model_comes_from_configuration(self, source, monkeypatch, recording):
        """Test that the proposer is built with the configured Gemini model."""
        monkeypatch.setattr(cli.const, "GEMINI_MODEL", "gemini-test")
        assert cli.main([str(source), "--samples", "64"]) == 0
        (proposer,) = recording
        assert proposer.model == "gemini-test"

    def test_no_model_flag(self, source, recording):
        """Test that --no-model never builds a proposer."""
        assert cli.main([str(source), "--samples", "64", "--no-model"]) == 0
        assert recording == []


class TestExitSignature:
    """Test exit signature options."""

    def test_defaults(self, source):
        """Test that every register is live and flags are dead by default."""
        signature = cli.exit_signature(cli.parse_args([str(source)]))
        assert signature.registers == ALL_REGISTERS
        assert signature.flags == frozenset()
        assert not signature.return_flags_live

    def test_live_out_and_flags(self, source):
        """Test register aliases and --flags-live."""
        signature = cli.exit_signature(cli.parse_args([str(source), "--live-out", "eax, rbx", "--flags-live"]))
        assert signature.registers == {"rax", "rbx"}
        assert signature.flags == ALL_FLAGS
        assert signature.return_flags_live

    def test_unknown_register(self, source):
        """Test that a bad register name stops the CLI."""
        with pytest.raises(SystemExit):
            cli.exit_signature(cli.parse_args([str(source), "--live-out", "xmm0"]))
