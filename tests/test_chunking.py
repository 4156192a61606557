from vibe_agent import chunking


def test_tokenize_drops_stop_words_and_short_tokens():
    tokens = chunking.tokenize("const fooBar = a + Baz_qux; return x")
    assert tokens == ["foobar", "baz_qux"]


def test_tokenize_empty():
    assert chunking.tokenize("") == []


def test_chunk_windows_overlap():
    content = "\n".join(f"line {i}" for i in range(40))
    chunks = chunking.chunk_file(file_id="fid", file_path="a.py", content=content)
    assert [c.chunk_id for c in chunks] == ["fid-0", "fid-15", "fid-30"]
    assert [(c.start_line, c.end_line) for c in chunks] == [(1, 20), (16, 35), (31, 40)]
    assert chunks[0].content.split("\n")[-5:] == chunks[1].content.split("\n")[:5]


def test_chunking_deterministic():
    content = "\n".join(f"value_{i} = {i}" for i in range(57))
    a = chunking.chunk_file(file_id="f", file_path="x.py", content=content)
    b = chunking.chunk_file(file_id="f", file_path="x.py", content=content)
    assert a == b


def test_whitespace_windows_are_skipped():
    content = "\n" * 30 + "x = 1"
    chunks = chunking.chunk_file(file_id="f", file_path="x.py", content=content)
    assert chunks
    assert all(c.content.strip() for c in chunks)
    assert chunks[0].start_line == 16


def test_file_id_ignores_path_spelling():
    assert chunking.make_file_id("src\\app.py") == chunking.make_file_id("./src/app.py")
    assert chunking.make_file_id("src/app.py") != chunking.make_file_id("src/other.py")
