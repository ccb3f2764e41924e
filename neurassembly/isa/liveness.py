"""
Register and flag liveness over an instruction sequence.

Builds a control-flow graph (networkx) with one node per instruction plus
pseudo exit nodes, then runs the classic backward dataflow to a fixed point.
Instructions with unknown effects or hazards read everything and kill
nothing, which keeps every value alive across them.
"""

from dataclasses import dataclass

import networkx as nx

from neurassembly.isa.instruction import END_UID, ControlKind, InstructionSequence
from neurassembly.isa.operands import ALL_FLAGS, ALL_REGISTERS


END = "end"
EXTERNAL = "external"
RETURN = "return"


def exit_live_sets(seq: InstructionSequence) -> dict[str, frozenset[str]]:
    """Values live at each kind of exit, per the sequence's exit signature."""
    fallthrough = frozenset(seq.exit.registers) | frozenset(seq.exit.flags)
    ret = frozenset(seq.exit.registers) | {"rsp"}
    if seq.exit.return_flags_live:
        ret |= frozenset(seq.exit.flags)
    return {END: fallthrough, EXTERNAL: fallthrough, RETURN: frozenset(ret)}


def build_cfg(seq: InstructionSequence) -> nx.DiGraph:
    """Instruction-level CFG; exits are the nodes ``end``, ``external`` and ``return``."""
    graph = nx.DiGraph()
    graph.add_nodes_from([END, EXTERNAL, RETURN])
    uids = seq.uid_map()
    count = len(seq)

    def fallthrough(i):
        return i + 1 if i + 1 < count else END

    def target_node(ins):
        if ins.target_uid == END_UID:
            return END
        if ins.target_uid is None:
            return EXTERNAL
        return uids[ins.target_uid]

    for i, ins in enumerate(seq):
        graph.add_node(i)
        control = ins.effects.control if ins.effects else ControlKind.NONE
        if control == ControlKind.RETURN:
            graph.add_edge(i, RETURN)
        elif control == ControlKind.INDIRECT:
            graph.add_edge(i, EXTERNAL)
        elif control == ControlKind.JUMP:
            graph.add_edge(i, target_node(ins))
        elif control == ControlKind.BRANCH:
            graph.add_edge(i, target_node(ins))
            graph.add_edge(i, fallthrough(i))
        else:
            graph.add_edge(i, fallthrough(i))
    return graph


@dataclass(frozen=True)
class Liveness:
    live_in: tuple[frozenset[str], ...]
    live_out: tuple[frozenset[str], ...]

    def after(self, index: int) -> frozenset[str]:
        """Registers and flags live right after instruction ``index``."""
        return self.live_out[index]

    @staticmethod
    def registers(live: frozenset[str]) -> frozenset[str]:
        return live & ALL_REGISTERS

    @staticmethod
    def flags(live: frozenset[str]) -> frozenset[str]:
        return live & ALL_FLAGS


def analyze(seq: InstructionSequence) -> Liveness:
    """
    Compute live-in/live-out sets for every instruction.

    Returns:
        Liveness with one entry per instruction
    """
    graph = build_cfg(seq)
    exits = exit_live_sets(seq)
    count = len(seq)
    live_in: list[frozenset[str]] = [frozenset()] * count
    live_out: list[frozenset[str]] = [frozenset()] * count

    def value_in(node):
        return exits[node] if isinstance(node, str) else live_in[node]

    worklist = list(range(count))
    queued = set(worklist)
    while worklist:
        i = worklist.pop()
        queued.discard(i)
        ins = seq[i]
        out = frozenset().union(*(value_in(s) for s in graph.successors(i)))
        effects = ins.effects
        uses = effects.reads | effects.flags_read
        kills = effects.kills | effects.flags_killed
        new_in = frozenset(uses | (out - kills))
        live_out[i] = out
        if new_in != live_in[i]:
            live_in[i] = new_in
            for pred in graph.predecessors(i):
                if pred not in queued:
                    worklist.append(pred)
                    queued.add(pred)
    return Liveness(tuple(live_in), tuple(live_out))
