#!/usr/bin/env python3
"""
=====================================================================
RAMON Condition Evaluator
=====================================================================
Conditions are conjunctions of atoms, written one atom per string:

    if = ["!ssh_ips = ${ip}", "usage > 90"]

Atom forms:
- membership:  var = expr / !var = expr   (var must be a declared variable)
- threshold:   field > N, field < N, field >= N, field <= N

Operands are interpolated from the match context before evaluation.
A threshold atom over a missing or non-numeric field is false. There is
no OR and no grouping.

Author: RAMON Team
Version: 0.3
=====================================================================
"""

import re
from typing import Collection, Iterable, List, Mapping, Optional, Union

from ramon.literals import ConfigurationError, interpolate, placeholders

ATOM_RE = re.compile(r'^\s*(!?)\s*([A-Za-z_][A-Za-z0-9_]*)\s*(>=|<=|=|>|<)\s*(.*?)\s*$')

COMPARATORS = {
    '>': lambda a, b: a > b,
    '<': lambda a, b: a < b,
    '>=': lambda a, b: a >= b,
    '<=': lambda a, b: a <= b,
}


class MembershipAtom:
    """True iff the interpolated operand is in the variable (inverted when negated)."""

    def __init__(self, variable: str, operand: str, negated: bool = False):
        self.variable = variable
        self.operand = operand
        self.negated = negated

    def evaluate(self, context: Mapping[str, str], store) -> bool:
        present = store.contains(self.variable, interpolate(self.operand, context))
        return not present if self.negated else present

    def variables(self) -> List[str]:
        return [self.variable]

    def __repr__(self) -> str:
        return f"{'!' if self.negated else ''}{self.variable} = {self.operand}"


class ThresholdAtom:
    """Numeric comparison of a context field against an operand."""

    def __init__(self, field: str, comparator: str, operand: str):
        self.field = field
        self.comparator = comparator
        self.operand = operand
        self._compare = COMPARATORS[comparator]

    def evaluate(self, context: Mapping[str, str], store) -> bool:
        raw = context.get(self.field)
        if raw is None:
            return False
        try:
            value = float(raw)
            target = float(interpolate(self.operand, context))
        except (TypeError, ValueError):
            return False
        return self._compare(value, target)

    def variables(self) -> List[str]:
        return []

    def __repr__(self) -> str:
        return f"{self.field} {self.comparator} {self.operand}"


Atom = Union[MembershipAtom, ThresholdAtom]


class Condition:
    """Logical AND of atoms. An empty condition is true."""

    def __init__(self, atoms: Iterable[Atom]):
        self.atoms = list(atoms)

    def evaluate(self, context: Mapping[str, str], store) -> bool:
        return all(atom.evaluate(context, store) for atom in self.atoms)

    def variables(self) -> List[str]:
        return [name for atom in self.atoms for name in atom.variables()]

    def __len__(self) -> int:
        return len(self.atoms)

    def __repr__(self) -> str:
        return f"Condition({' AND '.join(repr(a) for a in self.atoms)})"


def _strip_quotes(operand: str) -> str:
    if len(operand) >= 2 and operand[0] == operand[-1] and operand[0] in ('"', "'"):
        return operand[1:-1]
    return operand


def parse_atom(text: str, variables: Optional[Collection[str]] = None) -> Atom:
    """
    Parse one atom. When `variables` is given, membership atoms must name
    one of them.
    """
    if not isinstance(text, str):
        raise ConfigurationError(f"Condition entries must be strings, got {text!r}")

    match = ATOM_RE.match(text)
    if not match:
        raise ConfigurationError(f"Invalid condition `{text}` (expected `var = value` or `field > number`)")

    negated, name, op, operand = match.groups()
    operand = _strip_quotes(operand)

    if op == '=':
        if variables is not None and name not in variables:
            raise ConfigurationError(f"Condition `{text}` references unknown variable `{name}`")
        return MembershipAtom(name, operand, negated=bool(negated))

    if negated:
        raise ConfigurationError(f"Condition `{text}`: `!` only applies to membership tests")
    if not operand:
        raise ConfigurationError(f"Condition `{text}` is missing a number")
    if not placeholders(operand):
        try:
            float(operand)
        except ValueError:
            raise ConfigurationError(f"Condition `{text}`: `{operand}` is not a number") from None
    return ThresholdAtom(name, op, operand)


def parse_condition(
    spec: Union[str, List[str], None],
    variables: Optional[Collection[str]] = None
) -> Optional[Condition]:
    """Parse an `if` value (one string or a list of strings); None when absent."""
    if spec is None:
        return None
    entries = [spec] if isinstance(spec, str) else spec
    if not isinstance(entries, list):
        raise ConfigurationError(f"`if` must be a string or a list of strings, got {spec!r}")
    return Condition(parse_atom(entry, variables) for entry in entries)
