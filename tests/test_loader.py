import json
from pathlib import Path

import pytest

from pkgforge import (
    DuplicateSpecification,
    InputKind,
    InvalidSpecification,
    OverrideKind,
    SourceMethod,
    SpecificationNotFound,
    SpecificationStore,
    load_file,
    load_paths,
    parse_specification,
)
from conftest import make_spec


def test_parse_specification_applies_defaults() -> None:
    spec = parse_specification({"name": "zlib", "version": "1.3.1"})
    assert spec.ref == "zlib@1.3.1"
    assert spec.source.method == SourceMethod.NONE
    assert spec.inputs == ()
    assert [phase.name for phase in spec.phases] == ["unpack", "patch", "configure", "build", "check", "install"]
    assert spec.license == "unknown"


def test_parse_specification_reads_inputs_and_overrides() -> None:
    spec = parse_specification(
        {
            "name": "curl",
            "version": "8.5.0",
            "source": {"method": "url", "location": "https://curl.se/curl-8.5.0.tar.xz", "checksum": "sha256:abc"},
            "inputs": [
                {"name": "openssl", "kind": "propagated"},
                {"name": "perl", "kind": "native"},
                {"name": "zlib", "version": "1.3"},
            ],
            "phases": [
                {"name": "build", "action": ["make", "-j4"]},
                {"name": "check", "action": "make test", "override": {"kind": "skip"}},
            ],
        }
    )
    assert [(ref.name, ref.kind, ref.version) for ref in spec.inputs] == [
        ("openssl", InputKind.PROPAGATED, None),
        ("perl", InputKind.NATIVE, None),
        ("zlib", InputKind.REGULAR, "1.3"),
    ]
    assert spec.phase("build").action == ("make", "-j4")
    assert spec.phase("check").override.kind == OverrideKind.SKIP
    assert spec.phase("install") is None


@pytest.mark.parametrize(
    ("payload", "field"),
    [
        ({"version": "1.0"}, "name"),
        ({"name": "a", "version": "  "}, "version"),
        ({"name": "a b", "version": "1.0"}, "name"),
        ({"name": "a", "version": "1.0", "colour": "blue"}, "colour"),
        ({"name": "a", "version": "1.0", "inputs": [{"name": "b", "kind": "sideways"}]}, "inputs.0.kind"),
        ({"name": "a", "version": "1.0", "source": {"method": "git", "location": "https://x/a.git"}}, "source"),
    ],
)
def test_parse_specification_reports_offending_field(payload: dict, field: str) -> None:
    with pytest.raises(InvalidSpecification) as exc_info:
        parse_specification(payload, source="specs/a.json")
    assert exc_info.value.field == field
    assert "specs/a.json" in str(exc_info.value)


def test_parse_specification_rejects_duplicate_inputs() -> None:
    with pytest.raises(InvalidSpecification, match="duplicate input"):
        parse_specification({"name": "a", "version": "1", "inputs": [{"name": "b"}, {"name": "b", "kind": "native"}]})


def test_parse_specification_rejects_replace_without_action() -> None:
    with pytest.raises(InvalidSpecification):
        parse_specification(
            {"name": "a", "version": "1", "phases": [{"name": "build", "override": {"kind": "replace"}}]}
        )


def test_parse_specification_rejects_non_mapping() -> None:
    with pytest.raises(InvalidSpecification) as exc_info:
        parse_specification(["name", "a"])
    assert exc_info.value.field == "<root>"


def test_load_file_reads_json_list(tmp_path: Path) -> None:
    path = tmp_path / "base.json"
    path.write_text(
        json.dumps([{"name": "a", "version": "1.0"}, {"name": "b", "version": "2.0", "inputs": [{"name": "a"}]}]),
        encoding="utf-8",
    )
    specs = load_file(path)
    assert [spec.ref for spec in specs] == ["a@1.0", "b@2.0"]


def test_load_file_reads_toml_package_tables(tmp_path: Path) -> None:
    path = tmp_path / "tools.toml"
    path.write_text(
        """
[[package]]
name = "m4"
version = "1.4.19"

[[package]]
name = "autoconf"
version = "2.72"
inputs = [{ name = "m4", kind = "native" }]

[[package.phases]]
name = "build"
action = "make"
""",
        encoding="utf-8",
    )
    specs = load_file(path)
    assert [spec.ref for spec in specs] == ["m4@1.4.19", "autoconf@2.72"]
    assert specs[1].inputs[0].kind == InputKind.NATIVE
    assert [phase.name for phase in specs[1].phases] == ["build"]


def test_load_file_reads_single_toml_table(tmp_path: Path) -> None:
    path = tmp_path / "hello.toml"
    path.write_text('name = "hello"\nversion = "2.12"\n', encoding="utf-8")
    assert [spec.ref for spec in load_file(path)] == ["hello@2.12"]


def test_load_file_reports_source_of_bad_entry(tmp_path: Path) -> None:
    path = tmp_path / "bad.json"
    path.write_text(json.dumps([{"name": "ok", "version": "1"}, {"name": "broken"}]), encoding="utf-8")
    with pytest.raises(InvalidSpecification) as exc_info:
        load_file(path)
    assert exc_info.value.field == "version"
    assert exc_info.value.source == f"{path}[1]"


def test_load_file_rejects_malformed_json_and_unknown_suffix(tmp_path: Path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(InvalidSpecification, match="invalid JSON"):
        load_file(broken)
    other = tmp_path / "spec.yaml"
    other.write_text("name: a\n", encoding="utf-8")
    with pytest.raises(InvalidSpecification, match="unsupported"):
        load_file(other)


def test_load_paths_walks_directories_in_sorted_order(tmp_path: Path) -> None:
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "b.json").write_text(json.dumps({"name": "b", "version": "1"}), encoding="utf-8")
    (tmp_path / "a.toml").write_text('name = "a"\nversion = "1"\n', encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")
    assert [spec.name for spec in load_paths([tmp_path])] == ["a", "b"]


def test_load_paths_missing_path(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_paths([tmp_path / "nope"])


def test_store_lookup_picks_latest_version(store: SpecificationStore) -> None:
    store.register_all([make_spec("openssl", version=v) for v in ("1.1.1w", "3.0.13", "3.0.9")])
    assert store.lookup("openssl").version == "3.0.13"
    assert store.lookup("openssl", "1.1.1w").version == "1.1.1w"
    assert store.versions("openssl") == ["1.1.1w", "3.0.9", "3.0.13"]


def test_store_lookup_missing(store: SpecificationStore) -> None:
    store.register(make_spec("a"))
    with pytest.raises(SpecificationNotFound):
        store.lookup("b")
    with pytest.raises(SpecificationNotFound) as exc_info:
        store.lookup("a", "9.9")
    assert exc_info.value.version == "9.9"


def test_store_rejects_duplicates(store: SpecificationStore) -> None:
    store.register(make_spec("a"))
    with pytest.raises(DuplicateSpecification):
        store.register(make_spec("a", description="same identity"))


def test_store_membership_and_iteration() -> None:
    store = SpecificationStore([make_spec("b"), make_spec("a", version="2"), make_spec("a", version="1")])
    assert "a" in store
    assert ("a", "2") in store
    assert ("a", "3") not in store
    assert len(store) == 3
    assert store.names() == ["a", "b"]
    assert [spec.ref for spec in store] == ["a@1", "a@2", "b@1.0"]


def test_store_from_paths(tmp_path: Path) -> None:
    (tmp_path / "specs.json").write_text(
        json.dumps([{"name": "a", "version": "1"}, {"name": "a", "version": "1"}]), encoding="utf-8"
    )
    with pytest.raises(DuplicateSpecification):
        SpecificationStore.from_paths([tmp_path])
