from vibe_agent.diagnostics import Diagnostic, DiagnosticsService, FunctionLinter, detect_language


def test_detect_language():
    assert detect_language("src/app.py") == "python"
    assert detect_language("ui/App.TSX") == "tsx"
    assert detect_language("Makefile") == "plaintext"


def test_python_syntax_error_position():
    found = DiagnosticsService().lint("x = 1\ndef f(:\n", "python")
    assert len(found) == 1
    assert found[0].severity == "error"
    assert found[0].start_line == 2
    assert found[0].message.startswith("SyntaxError:")


def test_mixed_indentation_is_a_warning():
    found = DiagnosticsService().lint("if True:\n \tx = 1\n", "python")
    assert any(d.severity == "warning" and d.start_line == 2 for d in found)


def test_bracket_balance_and_json():
    service = DiagnosticsService()
    assert service.lint("function f() { return [1, 2]; }", "javascript") == []
    found = service.lint("a { color: red;", "css")
    assert [d.message for d in found] == ["Unbalanced curly braces '{ }' (Diff: 1)"]
    assert service.lint('{"a": 1}', "json") == []
    assert service.lint('{"a": }', "json")[0].message.startswith("Invalid JSON")


def test_unsupported_language_and_custom_linters():
    def always(content):
        return [Diagnostic("custom", "info", 1, 1, 1, 1)]

    service = DiagnosticsService([FunctionLinter("custom", ("markdown",), always)])
    assert service.lint("# title", "markdown")[0].message == "custom"
    assert service.lint("x = (", "python") == []


def test_failing_linter_is_contained():
    def broken(content):
        raise RuntimeError("linter crashed")

    service = DiagnosticsService([FunctionLinter("broken", ("python",), broken)])
    assert service.lint("x = 1", "python") == []
