#!/usr/bin/env python3
"""
Unit tests for condition parsing and evaluation.
"""

import pytest

from ramon.conditions import (
    Condition,
    MembershipAtom,
    ThresholdAtom,
    parse_atom,
    parse_condition,
)
from ramon.literals import ConfigurationError

pytestmark = pytest.mark.unit

VARIABLES = {"ssh_ips", "recent"}


class TestParsing:
    """Tests for atom and condition parsing"""

    def test_membership(self):
        atom = parse_atom("ssh_ips = ${ip}", VARIABLES)
        assert isinstance(atom, MembershipAtom)
        assert (atom.variable, atom.operand, atom.negated) == ("ssh_ips", "${ip}", False)

    def test_negated_membership(self):
        atom = parse_atom("!ssh_ips = ${ip}", VARIABLES)
        assert atom.negated is True

    def test_quoted_operand(self):
        assert parse_atom('ssh_ips = "10.0.0.1"', VARIABLES).operand == "10.0.0.1"

    @pytest.mark.parametrize("text,op", [
        ("usage > 90", ">"),
        ("usage < 10", "<"),
        ("usage >= 90.5", ">="),
        ("usage <= 0", "<="),
    ])
    def test_threshold(self, text, op):
        atom = parse_atom(text, VARIABLES)
        assert isinstance(atom, ThresholdAtom)
        assert atom.comparator == op

    def test_unknown_variable(self):
        with pytest.raises(ConfigurationError, match="unknown variable `nope`"):
            parse_atom("nope = x", VARIABLES)

    def test_negated_threshold_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_atom("!usage > 5", VARIABLES)

    def test_non_numeric_threshold_rejected(self):
        with pytest.raises(ConfigurationError, match="not a number"):
            parse_atom("usage > lots", VARIABLES)

    def test_threshold_operand_may_be_placeholder(self):
        assert parse_atom("usage > ${limit}", VARIABLES).operand == "${limit}"

    @pytest.mark.parametrize("text", ["", "usage", "usage >", "9x = 1", "a == b"])
    def test_invalid(self, text):
        with pytest.raises(ConfigurationError):
            parse_atom(text, VARIABLES)

    def test_condition_from_string_or_list(self):
        assert len(parse_condition("usage > 90", VARIABLES)) == 1
        assert len(parse_condition(["usage > 90", "!ssh_ips = x"], VARIABLES)) == 2

    def test_absent_condition(self):
        assert parse_condition(None, VARIABLES) is None

    def test_bad_type(self):
        with pytest.raises(ConfigurationError):
            parse_condition(42, VARIABLES)

    def test_variables_listed(self):
        condition = parse_condition(["ssh_ips = a", "usage > 1", "!recent = b"], VARIABLES)
        assert condition.variables() == ["ssh_ips", "recent"]


class TestEvaluation:
    """Tests for evaluating atoms against a context and the store"""

    def test_membership_uses_interpolated_operand(self, store):
        store.push("ssh_ips", "1.2.3.4")
        atom = parse_atom("ssh_ips = ${ip}", VARIABLES)
        assert atom.evaluate({"ip": "1.2.3.4"}, store) is True
        assert atom.evaluate({"ip": "5.6.7.8"}, store) is False

    def test_negation_inverts(self, store):
        atom = parse_atom("!ssh_ips = ${ip}", VARIABLES)
        assert atom.evaluate({"ip": "1.2.3.4"}, store) is True
        store.push("ssh_ips", "1.2.3.4")
        assert atom.evaluate({"ip": "1.2.3.4"}, store) is False

    def test_threshold_numeric(self, store):
        atom = parse_atom("usage > 90", VARIABLES)
        assert atom.evaluate({"usage": "95"}, store) is True
        assert atom.evaluate({"usage": "90"}, store) is False
        assert atom.evaluate({"usage": "90.01"}, store) is True

    def test_threshold_boundaries(self, store):
        assert parse_atom("usage >= 90", VARIABLES).evaluate({"usage": "90"}, store) is True
        assert parse_atom("usage <= 90", VARIABLES).evaluate({"usage": "90"}, store) is True
        assert parse_atom("usage < 90", VARIABLES).evaluate({"usage": "90"}, store) is False

    def test_non_numeric_field_is_false(self, store):
        assert parse_atom("usage > 90", VARIABLES).evaluate({"usage": "high"}, store) is False

    def test_missing_field_is_false(self, store):
        assert parse_atom("usage > 90", VARIABLES).evaluate({}, store) is False

    def test_conjunction(self, store):
        condition = parse_condition(["usage > 90", "!ssh_ips = ${host}"], VARIABLES)
        assert condition.evaluate({"usage": "95", "host": "a"}, store) is True
        store.push("ssh_ips", "a")
        assert condition.evaluate({"usage": "95", "host": "a"}, store) is False

    def test_empty_condition_is_true(self, store):
        assert Condition([]).evaluate({}, store) is True
