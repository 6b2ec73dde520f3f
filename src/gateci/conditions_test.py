import pytest

from gateci.catalog import IS_PROD, IS_TEST, PROD_PYPI_URL, TEST_PYPI_URL
from gateci.conditions import check_domains, evaluate, select_variable
from gateci.dsl import when
from gateci.errors import AmbiguousConditionError, InvalidTemplateError, MalformedConditionError, UnresolvedParameterError
from gateci.params import resolve


@pytest.fixture
def params():
    return resolve(
        {
            "testRunType": "Unit",
            "installationType": "PipLocal",
            "pinRequirements": False,
            "targetType": None,
        }
    )


@pytest.mark.parametrize(
    "expr, expected",
    [
        ("eq(parameters.testRunType, 'Unit')", True),
        ("eq(parameters.testRunType, 'unit')", True),
        ("ne(parameters.testRunType, 'Unit')", False),
        ("in(parameters.installationType, 'PipLocal', 'PyPI')", True),
        ("notIn(parameters.testRunType, 'Unit', 'Notebooks')", False),
        ("not(parameters.pinRequirements)", True),
        ("eq(parameters.pinRequirements, true)", False),
        ("and(eq(testRunType, 'Unit'), not(parameters.pinRequirements))", True),
        ("or(eq(parameters.testRunType, 'Notebooks'), eq(parameters.installationType, 'PyPI'))", False),
    ],
)
def test_evaluate(params, expr, expected):
    assert evaluate(expr, params) is expected


def test_unresolved_parameter_compares_as_empty(params):
    assert evaluate("eq(parameters.targetType, 'Test')", params) is False
    assert evaluate("not(parameters.targetType)", params) is True


def test_undeclared_parameter_is_malformed(params):
    with pytest.raises(MalformedConditionError):
        evaluate("eq(parameters.tagretType, 'Test')", params)


@pytest.mark.parametrize(
    "expr",
    [
        "",
        "eq(parameters.testRunType",
        "eq(parameters.testRunType, 'Unit') extra",
        "frob(parameters.testRunType, 'Unit')",
        "eq(parameters.testRunType)",
        'eq(parameters.testRunType, "Unit")',
    ],
)
def test_malformed_expressions(params, expr):
    with pytest.raises(MalformedConditionError):
        evaluate(expr, params)


def test_closed_domains():
    domains = {"installationType": ("None", "PipLocal", "PyPI")}

    check_domains(domains, resolve({"installationType": "piplocal"}))
    check_domains(domains, resolve({"installationType": None}))
    check_domains(domains, resolve({"platform": "Linux"}))
    with pytest.raises(InvalidTemplateError) as exc:
        check_domains(domains, resolve({"installationType": "PipLcoal"}), where="all-tests")
    assert exc.value.details == {"where": "all-tests", "parameter": "installationType"}


def test_pypi_url_follows_target_type():
    pypi_url = when("pypiUrl", (IS_TEST, TEST_PYPI_URL), (IS_PROD, PROD_PYPI_URL))

    assert select_variable(pypi_url, resolve({"targetType": "Test"})) == TEST_PYPI_URL
    assert select_variable(pypi_url, resolve({"targetType": "Prod"})) == PROD_PYPI_URL
    with pytest.raises(UnresolvedParameterError):
        select_variable(pypi_url, resolve({"targetType": "Staging"}))


def test_two_true_branches_are_ambiguous():
    variable = when("x", ("eq(parameters.a, 1)", "one"), ("ne(parameters.a, 2)", "not-two"))
    with pytest.raises(AmbiguousConditionError):
        select_variable(variable, resolve({"a": 1}))


def test_fallback_when_no_branch_holds():
    variable = when("x", ("eq(parameters.a, 2)", "two"), otherwise="default")
    assert select_variable(variable, resolve({"a": 1})) == "default"
