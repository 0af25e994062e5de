import pytest

from flowci.dag import ancestors, build_dag, topo_order, workflow_order
from flowci.errors import DefinitionError
from flowci.model import JobRef


def refs(*spec):
    return [JobRef(job=name, requires=list(deps)) for name, deps in spec]


def test_independent_jobs_keep_declaration_order():
    assert workflow_order(refs(("fmt", []), ("lint", []), ("test", []))) == ["fmt", "lint", "test"]


def test_ties_broken_by_declaration_order():
    rs = refs(("z_build", []), ("a_docs", []), ("deploy", ["z_build", "a_docs"]), ("b_lint", []))
    assert workflow_order(rs) == ["z_build", "a_docs", "deploy", "b_lint"]


def test_order_is_stable_across_calls():
    rs = refs(("a", []), ("b", ["a"]), ("c", ["a"]), ("d", ["b", "c"]))
    orders = {tuple(workflow_order(rs)) for _ in range(20)}
    assert orders == {("a", "b", "c", "d")}


def test_missing_dependency():
    with pytest.raises(DefinitionError, match="missing job 'ghost'"):
        build_dag(refs(("a", ["ghost"])))


def test_duplicate_names():
    with pytest.raises(DefinitionError, match="Duplicate"):
        build_dag(refs(("a", []), ("a", [])))


def test_cycle_reports_stuck_jobs():
    rs = refs(("a", []), ("b", ["c"]), ("c", ["b"]))
    adj, indeg = build_dag(rs)
    with pytest.raises(DefinitionError) as exc:
        topo_order(rs, adj, indeg)
    assert "['b', 'c']" in exc.value.message


def test_ancestors_are_transitive():
    rs = refs(("a", []), ("b", ["a"]), ("c", ["b"]), ("d", []))
    assert ancestors(rs, "c") == {"a", "b"}
    assert ancestors(rs, "d") == set()
