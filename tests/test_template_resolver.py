"""Tests for component execution ordering."""

from uuid import uuid4

import pytest

from paystructure_engine.calculators.config_schemas import parse_component_config
from paystructure_engine.calculators.template_resolver import TemplateResolver
from paystructure_engine.calculators.types import ComponentCategory, ResolvedComponent
from paystructure_engine.exceptions import DependencyCycle


def component(code, sequence_order, depends_on=()):
    return ResolvedComponent(
        component_id=uuid4(),
        component_code=code,
        component_name=code.title(),
        category=ComponentCategory.EARNING,
        configuration=parse_component_config("fixed", {"amount": "1"}),
        sequence_order=sequence_order,
        depends_on=tuple(depends_on),
    )


def codes(components):
    return [c.component_code for c in TemplateResolver.order_components(components)]


class TestOrderComponents:
    """Dependency order first, then sequence_order, then code."""

    def test_sequence_order_without_dependencies(self):
        assert codes([component("C", 30), component("A", 10), component("B", 20)]) == ["A", "B", "C"]

    def test_code_breaks_sequence_ties(self):
        assert codes([component("ZETA", 10), component("ALPHA", 10)]) == ["ALPHA", "ZETA"]

    def test_dependency_overrides_sequence_order(self):
        """A component runs after what it depends on, whatever its sequence."""
        ordered = codes(
            [
                component("TAX", 1, depends_on=["BASE", "BONUS"]),
                component("BONUS", 20, depends_on=["BASE"]),
                component("BASE", 10),
                component("MEAL", 5),
            ]
        )
        assert ordered == ["MEAL", "BASE", "BONUS", "TAX"]

    def test_missing_dependency_is_ignored(self):
        """Dependencies on absent (e.g. disabled) components do not block."""
        assert codes([component("BONUS", 20, depends_on=["BASE"])]) == ["BONUS"]

    def test_cycle_detected(self):
        with pytest.raises(DependencyCycle) as exc_info:
            TemplateResolver.order_components(
                [
                    component("A", 10, depends_on=["C"]),
                    component("B", 20, depends_on=["A"]),
                    component("C", 30, depends_on=["B"]),
                    component("D", 40),
                ]
            )
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"A", "B", "C"}
        assert exc_info.value.kind == "dependency_cycle"

    def test_self_dependency_is_a_cycle(self):
        with pytest.raises(DependencyCycle) as exc_info:
            TemplateResolver.order_components([component("A", 10, depends_on=["A"])])
        assert exc_info.value.cycle == ["A", "A"]
