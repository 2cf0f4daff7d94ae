import numpy as np
import pytest

from fieldop import ContractError, Field, FieldOperator, ShapeError, field_operator
from fieldop.core.offset_provider import OffsetProvider, activate, is_active
from fieldop.meshes import Cell, E2C, K, Koff


@field_operator
def identity(a: Field[[Cell], np.float64]) -> Field[[Cell], np.float64]:
    return a


@field_operator
def double(a: Field[[Cell], np.float64]) -> Field[[Cell], np.float64]:
    return identity(a) + identity(a)


@field_operator
def calls_nested_with_out(a: Field[[Cell], np.float64]) -> Field[[Cell], np.float64]:
    return identity(a, out=a)


@field_operator
def calls_nested_with_provider(a: Field[[Cell], np.float64]) -> Field[[Cell], np.float64]:
    return identity(a, offset_provider={})


@field_operator
def mismatched(a: Field[[Cell], np.float64], b: Field[[K], np.float64]) -> Field[[Cell], np.float64]:
    return a + b


@field_operator
def uses_e2c(a: Field[[Cell], np.float64]) -> Field[[Cell], np.float64]:
    return a(E2C)


@field_operator
def shift_up(a: Field[[K], np.float64]) -> Field[[K], np.float64]:
    return a(Koff[1])


def _cells(n=3):
    return Field((Cell,), np.arange(1.0, n + 1.0))


def test_decorator_returns_field_operator():
    assert isinstance(identity, FieldOperator)
    assert identity.__name__ == "identity"

    @field_operator(backend="compiled")
    def configured(a: Field[[Cell], np.float64]) -> Field[[Cell], np.float64]:
        return a

    assert configured.config.backend == "compiled"


def test_outer_call_requires_out():
    with pytest.raises(ContractError, match="needs out="):
        identity(_cells())


def test_out_must_be_field_or_tuple_of_fields():
    with pytest.raises(ContractError, match="out must be a Field"):
        identity(_cells(), out=np.zeros(3))
    with pytest.raises(ContractError, match="out must be a Field"):
        identity(_cells(), out=(Field((Cell,), np.zeros(3)), np.zeros(3)))


def test_outer_call_returns_none_and_writes_out():
    out = Field((Cell,), np.zeros(3))
    assert double(_cells(), out=out) is None
    np.testing.assert_array_equal(out.data, [2.0, 4.0, 6.0])


def test_nested_call_returns_value_and_is_logged():
    out = Field((Cell,), np.zeros(3))
    double(_cells(), out=out)
    modes = [entry["mode"] for entry in identity.logs if entry["kind"] == "call"]
    assert modes[-2:] == ["nested", "nested"]
    assert [entry["mode"] for entry in double.logs] == ["outer"]


def test_nested_call_rejects_out():
    with pytest.raises(ContractError, match="out="):
        calls_nested_with_out(_cells(), out=Field((Cell,), np.zeros(3)))
    assert not is_active()


def test_nested_call_rejects_offset_provider():
    with pytest.raises(ContractError, match="offset_provider="):
        calls_nested_with_provider(_cells(), out=Field((Cell,), np.zeros(3)))
    assert not is_active()


def test_registry_is_cleared_after_failure():
    a = _cells()
    b = Field((K,), np.ones(2))
    with pytest.raises(ShapeError):
        mismatched(a, b, out=Field((Cell,), np.zeros(3)))
    assert not is_active()
    out = Field((Cell,), np.zeros(3))
    identity(a, out=out)
    np.testing.assert_array_equal(out.data, a.data)


def test_missing_offset_in_provider():
    with pytest.raises(ContractError, match="not in the offset provider"):
        uses_e2c(_cells(), out=Field((Cell,), np.zeros(3)), offset_provider={})
    assert not is_active()


def test_provider_entries_are_validated():
    with pytest.raises(ContractError, match="Connectivity or a Dimension"):
        shift_up(Field((K,), np.ones(3)), out=Field((K,), np.zeros(3)), offset_provider={"Koff": 1})


def test_only_one_outer_call_at_a_time():
    with activate(OffsetProvider()):
        with pytest.raises(ContractError, match="already in flight"):
            with activate(OffsetProvider()):
                pass
    assert not is_active()


def test_vertical_shift_with_offset_provider_dimension():
    out = Field((K,), np.zeros(4))
    shift_up(Field((K,), np.arange(4.0)), out=out, offset_provider={"Koff": K})
    np.testing.assert_array_equal(out.data, [1.0, 2.0, 3.0, 0.0])


def test_unknown_backend_rejected():
    with pytest.raises(ValueError, match="Unsupported backend"):
        identity(_cells(), out=Field((Cell,), np.zeros(3)), backend="gpu")


def test_explain_lists_calls():
    out = Field((Cell,), np.zeros(3))
    identity(_cells(), out=out)
    text = identity.explain()
    assert "[outer] identity backend=embedded" in text
    payload = identity.explain(json=True)
    assert payload["logs"][-1]["kind"] == "call"
    assert "duration_ms" in payload["logs"][-1]


def test_with_backend_keeps_function():
    compiled = identity.with_backend("compiled")
    assert compiled.function is identity.function
    assert compiled.config.backend == "compiled"
    assert identity.config.backend == "embedded"
