from flowci import archive


def test_pack_is_relative_and_sorted(tmp_path):
    (tmp_path / "src" / "pkg").mkdir(parents=True)
    (tmp_path / "src" / "pkg" / "b.py").write_text("b")
    (tmp_path / "src" / "pkg" / "a.py").write_text("a")
    (tmp_path / "setup.cfg").write_text("")

    data = archive.pack(tmp_path, ["src", "setup.cfg"])
    assert archive.members(data) == ["src/pkg/a.py", "src/pkg/b.py", "setup.cfg"]


def test_excludes(tmp_path):
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "config").write_text("")
    (tmp_path / "pkg" / "__pycache__").mkdir(parents=True)
    (tmp_path / "pkg" / "__pycache__" / "m.cpython-312.pyc").write_bytes(b"")
    (tmp_path / "pkg" / "m.py").write_text("")

    data = archive.pack(tmp_path, ["."], excludes=archive.DEFAULT_EXCLUDES)
    assert archive.members(data) == ["pkg/m.py"]


def test_excludes_match_at_top_level_and_any_depth(tmp_path):
    (tmp_path / "__pycache__").mkdir()
    (tmp_path / "__pycache__" / "x.cpython-312.pyc").write_bytes(b"")
    (tmp_path / "a.pyc").write_bytes(b"")
    (tmp_path / ".DS_Store").write_bytes(b"")
    (tmp_path / "a" / "b" / "__pycache__" / "c").mkdir(parents=True)
    (tmp_path / "a" / "b" / "__pycache__" / "c" / "d.txt").write_text("")
    (tmp_path / "a" / "b" / "keep.py").write_text("")
    (tmp_path / "main.py").write_text("")

    data = archive.pack(tmp_path, ["."], excludes=archive.DEFAULT_EXCLUDES)
    assert archive.members(data) == ["a/b/keep.py", "main.py"]


def test_globs(tmp_path):
    for name in ("app-1.tar.gz", "app-2.tar.gz", "notes.md"):
        (tmp_path / name).write_text(name)
    data = archive.pack(tmp_path, ["*.tar.gz"])
    assert archive.members(data) == ["app-1.tar.gz", "app-2.tar.gz"]


def test_unpack(tmp_path):
    src = tmp_path / "src"
    (src / "d").mkdir(parents=True)
    (src / "d" / "f.txt").write_text("hello")

    names = archive.unpack(archive.pack(src, ["d"]), tmp_path / "dest")
    assert names == ["d/f.txt"]
    assert (tmp_path / "dest" / "d" / "f.txt").read_text() == "hello"
