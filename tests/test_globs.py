from ioaudit.globs import compile_glob, glob_to_regex, has_wildcards


def test_recursive_star_slash_star_matches_zero_or_more_directories() -> None:
    pattern = compile_glob("/ws/libs/a/**/*.ts")

    assert pattern.matches("/ws/libs/a/a.ts")
    assert pattern.matches("/ws/libs/a/src/deep/a.ts")
    assert not pattern.matches("/ws/libs/b/a.ts")
    assert not pattern.matches("/ws/libs/a/a.tsx")


def test_single_star_stays_within_one_segment() -> None:
    pattern = compile_glob("/ws/src/*.ts")

    assert pattern.matches("/ws/src/a.ts")
    assert not pattern.matches("/ws/src/nested/a.ts")


def test_double_star_crosses_separators() -> None:
    pattern = compile_glob("/ws/a**b")

    assert pattern.matches("/ws/ab")
    assert pattern.matches("/ws/a/x/y/b")
    assert not pattern.matches("/ws/a/x/c")


def test_question_mark_matches_one_character() -> None:
    pattern = compile_glob("/ws/file?.txt")

    assert pattern("/ws/file1.txt")
    assert not pattern("/ws/file12.txt")
    assert not pattern("/ws/file.txt")


def test_trailing_recursive_wildcard_matches_anchor_directory() -> None:
    assert compile_glob("/ws/src/**/*").matches("/ws/src")
    assert compile_glob("/ws/src/**/*").matches("/ws/src/a/b.js")
    assert compile_glob("/ws/dist/**").matches("/ws/dist")
    assert not compile_glob("/ws/dist/**").matches("/ws/distribution/x")


def test_literal_pattern_matches_path_and_descendants() -> None:
    pattern = compile_glob("/ws/dist")

    assert pattern.regex is None
    assert pattern.matches("/ws/dist")
    assert pattern.matches("/ws/dist/x/y.js")
    assert not pattern.matches("/ws/distribution/x")


def test_regex_metacharacters_are_literal() -> None:
    pattern = compile_glob("/ws/a+b/(x)/*.txt")

    assert pattern.matches("/ws/a+b/(x)/c.txt")
    assert not pattern.matches("/ws/aab/x/c.txt")
    assert not pattern.matches("/ws/a+b/(x)/cxtxt")


def test_wildcards_are_recognised_longest_first() -> None:
    assert has_wildcards("src/**/*.ts")
    assert not has_wildcards("src/index.ts")
    assert glob_to_regex("src/**/*.ts") == r"src/(?:.*/)?[^/]*\.ts"
