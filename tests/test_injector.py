from __future__ import annotations

from eltag.detect.detector import ElementDetector
from eltag.detect.models import DetectedElement, InclusionPolicy
from eltag.ids.models import GeneratedID, IDComponents
from eltag.mutate.injector import IdentifierInjector, injection_stats
from eltag.mutate.models import InjectionContext
from eltag.tree.nodes import Program
from eltag.tree.printer import print_tree
from eltag.tree.scanner import parse_source

SOURCE = """export const Nav = () => (
  <nav className="top">
    <a href="/">Home</a>
    <a data-el-id="Nav-a-old" href="/about">About</a>
  </nav>
);
"""


def _generated(identifier: str) -> GeneratedID:
    return GeneratedID(
        identifier=identifier,
        hash="h",
        components=IDComponents(filename="Nav", element="x", hash="h"),
    )


def _detect(tree: Program, policy: InclusionPolicy | None = None) -> list[DetectedElement]:
    return ElementDetector(policy).detect(tree, "Nav.jsx").elements


def test_inject_adds_attribute_first_and_preserves_layout() -> None:
    tree = parse_source(SOURCE, "Nav.jsx")
    nav, home, about = _detect(tree)
    contexts = [
        InjectionContext(nav, _generated("Nav-nav-1")),
        InjectionContext(home, _generated("Nav-a-2")),
        InjectionContext(about, _generated("Nav-a-3")),
    ]

    result = IdentifierInjector().inject(tree, contexts)

    assert [change.type for change in result.changes] == ["add", "add"]
    assert [change.identifier for change in result.changes] == ["Nav-nav-1", "Nav-a-2"]
    assert result.modified is True
    assert print_tree(tree) == SOURCE.replace(
        '<nav className="top">', '<nav data-el-id="Nav-nav-1" className="top">'
    ).replace('<a href="/">', '<a data-el-id="Nav-a-2" href="/">')


def test_inject_updates_existing_when_not_preserving() -> None:
    tree = parse_source(SOURCE, "Nav.jsx")
    about = _detect(tree)[2]

    result = IdentifierInjector(preserve_existing=False).inject(
        tree, [InjectionContext(about, _generated("Nav-a-new"))]
    )

    assert len(result.changes) == 1
    change = result.changes[0]
    assert change.type == "update"
    assert change.old_value == "Nav-a-old"
    assert change.new_value == "Nav-a-new"
    assert '<a data-el-id="Nav-a-new" href="/about">' in print_tree(tree)


def test_inject_skips_update_when_value_is_unchanged() -> None:
    tree = parse_source(SOURCE, "Nav.jsx")
    about = _detect(tree)[2]

    result = IdentifierInjector(preserve_existing=False).inject(
        tree, [InjectionContext(about, _generated("Nav-a-old"))]
    )

    assert result.changes == []
    assert result.failures == []
    assert print_tree(tree) == SOURCE


def test_inject_honours_should_inject_flag() -> None:
    tree = parse_source(SOURCE, "Nav.jsx")
    nav = _detect(tree)[0]

    result = IdentifierInjector().inject(
        tree, [InjectionContext(nav, _generated("Nav-nav-1"), should_inject=False)]
    )

    assert result.modified is False
    assert print_tree(tree) == SOURCE


def test_inject_reports_fragments_missing_elements_and_invalid_ids() -> None:
    source = "x = <><div /></>;"
    tree = parse_source(source, "x.jsx")
    fragment, div = _detect(tree, InclusionPolicy(fragment=True))
    stale = DetectedElement(
        file_path="x.jsx",
        kind="dom",
        tag_name="span",
        attributes=(),
        position=div.position,
        node_path=div.node_path,
    )

    result = IdentifierInjector().inject(
        tree,
        [
            InjectionContext(fragment, _generated("x-Fragment-1")),
            InjectionContext(stale, _generated("x-span-1")),
            InjectionContext(div, _generated("bad id")),
        ],
    )

    assert [failure.reason for failure in result.failures] == [
        "fragment_cannot_carry_attributes",
        "element_not_found",
        "invalid_identifier",
    ]
    assert result.changes == []
    assert print_tree(tree) == source


def test_nested_injection_resolves_paths_before_editing() -> None:
    source = "x = <ul className='l'><li><b>1</b></li></ul>;"
    tree = parse_source(source, "x.jsx")
    elements = _detect(tree)

    IdentifierInjector().inject(
        tree,
        [InjectionContext(element, _generated(f"x-{element.tag_name}")) for element in elements],
    )

    assert print_tree(tree) == (
        "x = <ul data-el-id=\"x-ul\" className='l'><li data-el-id=\"x-li\">"
        "<b data-el-id=\"x-b\">1</b></li></ul>;"
    )


def test_has_identifier_attributes_and_stats() -> None:
    tree = parse_source(SOURCE, "Nav.jsx")
    injector = IdentifierInjector()
    assert injector.has_identifier_attributes(tree) is True
    assert IdentifierInjector("data-qa").has_identifier_attributes(tree) is False

    nav = _detect(tree)[0]
    result = injector.inject(tree, [InjectionContext(nav, _generated("Nav-nav-1"))])

    assert injection_stats(result) == {"total_changes": 1, "added": 1, "updated": 0, "failed": 0}
