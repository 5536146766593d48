import json

from interpreter import (
    MAX_FOR_ITERATIONS,
    MAX_WHILE_ITERATIONS,
    Interpreter,
    SiglaRuntimeError,
    TracebackFormatter,
)
from parser import MAX_NESTING_DEPTH
from resolver import POLICY_ERROR


def test_hello(run):
    r = run("§log[Hello]")

    assert r.result.success
    assert r.result.exit_code == 0
    assert r.output == ["Hello"]


def test_plain_text_and_comments_are_skipped(run):
    r = run("# comment\njust some text\n\n§log[x]")

    assert r.output == ["x"]
    assert r.result.diagnostics == []


def test_statement_level_quotes_keep_spacing(run):
    assert run('§log["  spaced  "]').output == ["  spaced  "]


def test_if_elseif_else(run):
    source = """
§var[n; 5]
§if[$n > 10]
    §log[big]
§elseif[$n > 3]
    §log[medium]
§else
    §log[small]
§endif
§log[done]
"""
    assert run(source).output == ["medium", "done"]


def test_else_branch_and_variable_names_in_conditions(run):
    source = """
§var[name; Bob]
§if[name == 'Ann']
    §log[ann]
§elseif['$name' == 'Ann']
    §log[also ann]
§else
    §log[someone else]
§endif
"""
    assert run(source).output == ["someone else"]


def test_later_conditions_are_not_evaluated(run):
    asked = []
    source = """
§if[true]
    §log[first]
§elseif[§input[ask] == 'x']
    §log[second]
§endif
"""
    r = run(source, input_provider=lambda prompt: asked.append(prompt) or "x")

    assert r.output == ["first"]
    assert asked == []


def test_condition_errors_are_false(run):
    r = run("§if[)(]\n§log[yes]\n§else\n§log[no]\n§endif")

    assert r.output == ["no"]
    assert r.errors == []


def test_nested_blocks(run):
    source = """
§for[i; 0; 3]
    §if[$i == 1]
        §log[one]
    §else
        §for[j; 0; 2]
            §log[$i.$j]
        §endfor
    §endif
§endfor
"""
    assert run(source).output == ["0.0", "0.1", "one", "2.0", "2.1"]


def test_while_loop(run):
    source = """
§var[i; 0]
§while[$i < 3]
    §log[$i]
    §var[i; $i + 1]
§endwhile
"""
    r = run(source)

    assert r.output == ["0", "1", "2"]
    assert r.result.variables["i"] == "3"


def test_while_runaway_is_capped(run):
    r = run("§var[c; 0]\n§while[true]\n§var[c; $c + 1]\n§endwhile\n§log[after]")

    assert r.result.variables["c"] == str(MAX_WHILE_ITERATIONS)
    assert r.rules() == ["WHILE"]
    assert r.output == ["after"]
    assert r.result.success


def test_for_loop_and_bounds_from_variables(run):
    r = run("§var[n; 3]\n§for[i; 1; $n]\n§log[$i]\n§endfor")

    assert r.output == ["1", "2"]


def test_for_bad_bounds_skip_body(run):
    r = run("§for[i; 0; many]\n§log[body]\n§endfor\n§log[after]")

    assert r.output == ["after"]
    assert r.rules() == ["FOR"]


def test_for_ignores_loop_variable_reassignment(run):
    r = run("§for[i; 0; 3]\n§var[i; 100]\n§log[tick]\n§endfor")

    assert r.output == ["tick", "tick", "tick"]


def test_for_iterations_are_capped(run):
    r = run(f"§for[i; 0; {MAX_FOR_ITERATIONS * 2}]\n§endfor")

    assert r.rules() == ["FOR"]
    assert r.result.variables["i"] == str(MAX_FOR_ITERATIONS - 1)


def test_break_and_continue(run):
    source = """
§for[i; 0; 5]
    §if[$i == 1]
        §continue
    §endif
    §if[$i == 3]
        §break
    §endif
    §log[$i]
§endfor
"""
    assert run(source).output == ["0", "2"]


def test_continue_in_while(run):
    source = """
§var[i; 0]
§while[$i < 4]
    §var[i; $i + 1]
    §if[$i == 2]
        §continue
    §endif
    §log[$i]
§endwhile
"""
    assert run(source).output == ["1", "3", "4"]


def test_break_only_leaves_innermost_loop(run):
    source = """
§for[i; 0; 2]
    §for[j; 0; 5]
        §if[$j == 1]
            §break
        §endif
        §log[$i-$j]
    §endfor
§endfor
"""
    assert run(source).output == ["0-0", "1-0"]


def test_exit_stops_everything(run):
    source = """
§for[i; 0; 5]
    §if[$i == 2]
        §exit[7]
    §endif
    §log[$i]
§endfor
§log[never]
"""
    r = run(source)

    assert r.output == ["0", "1"]
    assert r.result.exit_code == 7
    assert r.result.success


def test_nested_exit_finishes_statement_first(run):
    r = run("§log[§exit[3]]\n§log[after]")

    assert r.output == ["3"]
    assert r.result.exit_code == 3
    assert r.interpreter.context.io_log == [{"event": "EXIT", "code": 3}, {"event": "LOG", "text": "3"}]


def test_break_outside_loop_is_reported(run):
    r = run("§log[a]\n§break\n§log[b]\n§if[true]\n§continue\n§log[skipped]\n§endif\n§log[c]")

    assert r.output == ["a", "b", "c"]
    assert r.rules() == ["BREAK", "CONTINUE"]
    assert r.result.success


def test_handler_output_is_never_executed(run):
    r = run("§var[t; §replace[Xlog[hi]; X; §]]\n§log[$t]\n§log[§lower[§LOG[hi]]]")

    assert r.output == ["§log[hi]", "§log[hi]"]


def test_unknown_directives(run):
    r = run("§nope[1]\n§log[a §nope[1] b]")

    assert r.output == ["a §nope[1] b"]
    assert r.rules("warning") == ["DISPATCH"]


def test_trailing_text_skips_statement(run):
    r = run("§log[a] extra\n§log[b]")

    assert r.output == ["b"]
    assert r.rules("warning") == ["STATEMENT"]


def test_variable_substitution_longest_first(run):
    r = run("§var[to; X]\n§var[total; 9]\n§log[$total $to]\n§var[a; 1]\n§log[$ab $missing]")

    assert r.output == ["9 X", "1b $missing"]


def test_nesting_limit_is_reported(run):
    depth = MAX_NESTING_DEPTH + 1
    fragment = "§upper[" * depth + "x" + "]" * depth
    r = run(f"§log[{fragment}]")

    assert r.output == [fragment]
    assert r.rules() == ["PARSE"]


def test_validation_failure_runs_nothing(run):
    r = run("§log[x]\n§if[true]\n§log[y]")

    assert not r.result.success
    assert r.output == []
    assert r.rules() == ["VALIDATE"]
    assert r.errors[0].location.line == 2


def test_empty_program_fails(run):
    r = run("   \n")

    assert not r.result.success
    assert r.rules() == ["RUN"]


def test_require_end_to_end(run, tmp_path):
    (tmp_path / "lib.sgl").write_text("§var[greeting; hi]", encoding="utf-8")
    r = run("§require[lib]\n§log[$greeting]", base_dir=str(tmp_path))

    assert r.output == ["hi"]


def test_require_failures_run_nothing(run, tmp_path):
    (tmp_path / "lib.sgl").write_text("§log[lib]", encoding="utf-8")

    missing = run("§log[a]\n§require[missing]", base_dir=str(tmp_path))
    assert not missing.result.success
    assert missing.output == []
    assert missing.rules() == ["REQUIRE"]

    repeated = run("§require[lib]\n§require[lib]", base_dir=str(tmp_path), require_policy=POLICY_ERROR)
    assert not repeated.result.success
    assert repeated.output == []


def test_runs_are_isolated(run):
    first = run("§var[x; 1]")
    second = run("§log[$x]")

    assert first.result.variables == {"x": "1"}
    assert second.output == ["$x"]


def test_debug_diagnostics(run):
    quiet = run("§var[x; 1]")
    loud = run("§var[x; 1]\n§if[$x == 1]\n§endif", debug=True)

    assert quiet.result.diagnostics == []
    assert "VAR" in loud.rules("debug")
    assert "CONDITION" in loud.rules("debug")
    assert loud.sunk == loud.result.diagnostics
    assert loud.interpreter.logger.entries[0].env_snapshot == {}


def test_handler_crash_stops_the_run():
    output = []
    interpreter = Interpreter(source="§log[a]\n§boom[]\n§log[b]", output_sink=output.append, diagnostic_sink=lambda d: None)

    def boom(ctx, args):
        raise ValueError("kaput")

    interpreter.registry.register("boom", boom, origin="test", priority=100)
    result = interpreter.run()

    assert not result.success
    assert output == ["a"]
    error = interpreter.last_error
    assert isinstance(error, SiglaRuntimeError)
    assert "Internal interpreter error" in error.message
    assert error.location.line == 2
    assert error.step_index == 1


def test_state_log_and_traceback():
    interpreter = Interpreter(source="§log[a]\n§boom[]", output_sink=lambda text: None, diagnostic_sink=lambda d: None)
    interpreter.registry.register("boom", lambda ctx, args: 1 / 0, origin="test", priority=100)
    interpreter.run()

    entries = interpreter.logger.entries
    assert [e.state_id for e in entries] == ["s_000000", "s_000001"]
    assert entries[1].statement == "§boom[]"

    formatter = TracebackFormatter(interpreter)
    text = formatter.format_text(interpreter.last_error, verbose=False)
    assert 'File "<string>", line 2' in text
    assert text.splitlines()[-1].startswith("SiglaRuntimeError: Internal interpreter error in §boom")

    data = json.loads(formatter.to_json(interpreter.last_error))
    assert data["error"]["failing_step_index"] == 1
    assert data["traceback"][-1]["source_location"]["line"] == 2


def test_check_does_not_execute():
    output = []
    interpreter = Interpreter(source="§log[x]", output_sink=output.append)

    assert interpreter.check().success
    assert output == []


def test_context_expand_and_resolve():
    interpreter = Interpreter(source="§log[x]")
    ctx = interpreter._new_context()
    ctx.set_variable("n", "2")

    assert ctx.expand("$n + §add[$n; 1]") == "$n + 3"
    assert ctx.resolve("$n + §add[$n; 1]") == "2 + 3"
    assert ctx.get_variable("n") == "2"
    assert ctx.get_variable("missing", "none") == "none"
    assert ctx.arguments("'a'; §upper[b]") == ["a", "B"]


def test_condition_evaluation_faults_are_false(run):
    nested = "(" * 2000 + "1" + ")" * 2000
    source = f"§if[1e309 % 2 == 0]\n§log[yes]\n§else\n§log[no]\n§endif\n§if[{nested}]\n§log[deep]\n§endif\n§log[after]"
    r = run(source)

    assert r.output == ["no", "after"]
    assert r.result.success
    assert r.errors == []


def test_undecodable_require_fails_the_run(run, tmp_path):
    (tmp_path / "lib.sgl").write_bytes(b"\xff\xfe")
    r = run("§require[lib]\n§log[x]", base_dir=str(tmp_path))

    assert not r.result.success
    assert r.output == []
    assert r.rules() == ["REQUIRE"]


def test_env_snapshots_only_when_verbose(run):
    r = run("§var[x; 1]\n§log[$x]")

    assert [e.env_snapshot for e in r.interpreter.logger.entries] == [None, None]
