import pytest

from resolver import (
    POLICY_ERROR,
    POLICY_REPEAT,
    RequireError,
    RequireResolver,
    SKIP_MARKER,
)


def _write(path, text):
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_inlines_required_file(tmp_path):
    lib = _write(tmp_path / "lib.sgl", "§log[lib]")
    result = RequireResolver(str(tmp_path)).resolve("§require[lib]\n§log[main]")

    assert result.text == "§log[lib]\n§log[main]"
    assert result.included == [lib]
    assert result.complete


def test_explicit_extension_is_not_doubled(tmp_path):
    _write(tmp_path / "lib.sgl", "x")
    resolver = RequireResolver(str(tmp_path))

    assert resolver.resolve_path("lib.sgl") == resolver.resolve_path("lib")
    assert resolver.resolve("§require[lib.sgl]").text == "x"


def test_relative_to_working_directory_by_default(tmp_path, monkeypatch):
    _write(tmp_path / "lib.sgl", "§log[cwd]")
    monkeypatch.chdir(tmp_path)

    assert RequireResolver().resolve("§require[lib]").text == "§log[cwd]"


def test_missing_file_aborts(tmp_path):
    _write(tmp_path / "lib.sgl", "§log[lib]")
    result = RequireResolver(str(tmp_path)).resolve("§require[missing]\n§require[lib]")

    assert not result.complete
    assert len(result.errors) == 1
    assert result.errors[0].startswith("File not found:")
    assert result.included == []
    assert result.unresolved == ["§require[missing]", "§require[lib]"]


def test_nested_missing_file_aborts_outer(tmp_path):
    _write(tmp_path / "a.sgl", "§log[a]\n§require[gone]")
    result = RequireResolver(str(tmp_path)).resolve("§require[a]\n§log[after]")

    assert not result.complete
    assert result.text.startswith("§log[a]\n§require[gone]")


def test_cycle_is_skipped_once(tmp_path):
    a = _write(tmp_path / "a.sgl", "§log[a]\n§require[b]")
    _write(tmp_path / "b.sgl", "§log[b]\n§require[a]")
    result = RequireResolver(str(tmp_path)).resolve("§require[a]")

    assert result.text == "§log[a]\n§log[b]\n" + SKIP_MARKER.format(path=a)
    assert result.skipped == [a]
    assert result.complete


def test_repeat_policies(tmp_path):
    lib = _write(tmp_path / "lib.sgl", "§log[lib]")
    source = "§require[lib]\n§require[lib]"

    skipped = RequireResolver(str(tmp_path)).resolve(source)
    assert skipped.text == "§log[lib]\n" + SKIP_MARKER.format(path=lib)

    repeated = RequireResolver(str(tmp_path), policy=POLICY_REPEAT).resolve(source)
    assert repeated.text == "§log[lib]\n§log[lib]"

    with pytest.raises(RequireError):
        RequireResolver(str(tmp_path), policy=POLICY_ERROR).resolve(source)


def test_repeat_policy_still_breaks_cycles(tmp_path):
    a = _write(tmp_path / "a.sgl", "§require[a]\n§log[a]")
    result = RequireResolver(str(tmp_path), policy=POLICY_REPEAT).resolve("§require[a]")

    assert result.text == SKIP_MARKER.format(path=a) + "\n§log[a]"


def test_origin_counts_as_resolved(tmp_path):
    main = _write(tmp_path / "main.sgl", "§require[main]\n§log[main]")
    result = RequireResolver(str(tmp_path)).resolve("§require[main]\n§log[main]", origin=main)

    assert result.text == SKIP_MARKER.format(path=main) + "\n§log[main]"


def test_comment_lines_are_ignored(tmp_path):
    result = RequireResolver(str(tmp_path)).resolve("# §require[nothing]\n§log[x]")

    assert result.complete
    assert result.text == "# §require[nothing]\n§log[x]"


def test_unknown_policy_rejected():
    with pytest.raises(ValueError):
        RequireResolver(policy="sometimes")


def test_undecodable_file_aborts(tmp_path):
    (tmp_path / "lib.sgl").write_bytes(b"\xff\xfe")
    result = RequireResolver(str(tmp_path)).resolve("§require[lib]\n§log[x]")

    assert not result.complete
    assert result.errors[0].startswith("Failed to read")
    assert result.unresolved == ["§require[lib]"]
