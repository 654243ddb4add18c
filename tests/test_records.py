import pytest

from dbisolation.records import Record, ScenarioResult, Selector, format_table


def test_selector_equality_and_membership():
    assert Selector.key("a").matches(Record("a", "1"))
    assert Selector.value("1", "2").matches(Record("x", "2"))
    assert not Selector.value("1").matches(Record("x", "2"))
    assert str(Selector.key("a")) == "key = 'a'"


def test_selector_validation():
    with pytest.raises(ValueError):
        Selector("id", ("1",))
    with pytest.raises(ValueError):
        Selector.key()


def test_scenario_result_is_immutable():
    observations = {"first_read": "my-value1"}
    result = ScenarioResult(observations, [Record("a", "1")])
    observations["first_read"] = "changed"

    assert result["first_read"] == "my-value1"
    assert result.snapshot == (Record("a", "1"),)
    with pytest.raises(TypeError):
        result.observations["first_read"] = "changed"


def test_format_table():
    assert format_table([]) == "EMPTY"
    assert format_table([Record("alice", "oncall")]) == (
        "|         key|       value|\n"
        "|       alice|      oncall|"
    )
