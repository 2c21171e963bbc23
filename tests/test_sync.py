import sqlite3
from dataclasses import dataclass
from typing import List

import pytest

from models import A, Author, B, Book, Bundle, Label, Node, Pair, Post, Setting, Simple, memory_db, rows
from ormlite import (
    ConfigError,
    ExecutionError,
    InvalidArgError,
    NotFoundError,
    QueryOptions,
    RelationTypeError,
    delete,
    insert,
    query,
    update,
    update_deep,
    upsert,
)


def seed_links(conn: sqlite3.Connection, links: List[int]) -> None:
    conn.execute("INSERT INTO a(id, name) VALUES(1, 'a')")
    conn.executemany("INSERT INTO b(id, name) VALUES(?, ?)", [(1, "x"), (2, "y"), (3, "z")])
    conn.executemany("INSERT INTO j(a_id, b_id) VALUES(1, ?)", [(b,) for b in links])


def junction_writes(statements: List[str]) -> List[str]:
    return [sql for sql in statements if sql.startswith(("INSERT INTO j", "DELETE FROM j"))]


def test_insert_assigns_primary_key() -> None:
    conn = memory_db()
    first = upsert(conn, Simple(name="a", value=1))
    second = upsert(conn, Simple(name="b", value=2))
    assert (first.id, second.id) == (1, 2)
    assert rows(conn, "SELECT id, name, value FROM simple ORDER BY id") == [(1, "a", 1), (2, "b", 2)]


def test_upsert_with_primary_key_updates_existing_row() -> None:
    conn = memory_db()
    record = upsert(conn, Simple(name="a", value=1))
    record.value = 5
    upsert(conn, record)
    assert rows(conn, "SELECT id, name, value FROM simple") == [(1, "a", 5)]


def test_upsert_on_unique_conflict_resolves_existing_identity() -> None:
    conn = memory_db()
    conn.executemany("INSERT INTO simple(name, value) VALUES(?, ?)", [("x", 1), ("y", 2)])
    conn.executemany("INSERT INTO setting(id, name, value) VALUES(?, ?, ?)", [(7, "theme", "light"), (8, "lang", "en")])

    setting = upsert(conn, Setting(name="theme", value="dark"))

    assert setting.id == 7
    assert rows(conn, "SELECT id, name, value FROM setting ORDER BY id") == [(7, "theme", "dark"), (8, "lang", "en")]


def test_insert_does_not_update_on_conflict() -> None:
    conn = memory_db()
    upsert(conn, Simple(id=1, name="a", value=1))
    with pytest.raises(ExecutionError):
        insert(conn, Simple(id=1, name="b", value=2))
    assert rows(conn, "SELECT name FROM simple") == [("a",)]


def test_composite_key_round_trip() -> None:
    conn = memory_db()
    for first_id, second_id in [(1, 2), (1, 1), (2, 1)]:
        upsert(conn, Pair(first_id, second_id, f"{first_id}-{second_id}"))

    delete(conn, Pair(1, 1))

    remaining = query(conn, Pair)
    assert sorted((p.first_id, p.second_id) for p in remaining) == [(1, 2), (2, 1)]


def test_update_and_delete_report_missing_rows() -> None:
    conn = memory_db()
    with pytest.raises(NotFoundError):
        update(conn, Simple(id=3, name="ghost"))
    with pytest.raises(NotFoundError):
        delete(conn, Simple(id=3))


def test_update_changes_columns_by_primary_key() -> None:
    conn = memory_db()
    record = upsert(conn, Simple(name="a", value=1))
    record.name = "renamed"
    update(conn, record)
    assert rows(conn, "SELECT name FROM simple WHERE id = 1") == [("renamed",)]


@dataclass
class Note:
    body: str = ""

    @classmethod
    def table(cls) -> str:
        return "simple"


def test_delete_requires_a_usable_primary_key() -> None:
    conn = memory_db()
    with pytest.raises(InvalidArgError):
        delete(conn, Simple())
    with pytest.raises(ConfigError):
        delete(conn, Note(body="x"))


def test_has_one_target_is_inserted_before_the_owner() -> None:
    conn = memory_db()
    book = upsert(conn, Book(title="dune", author=Author(name="herbert")))
    assert book.author.id == 1
    assert rows(conn, "SELECT id, title, author_id FROM book") == [(book.id, "dune", 1)]


def test_persisted_has_one_target_is_not_rewritten() -> None:
    conn = memory_db()
    conn.execute("INSERT INTO author(id, name) VALUES(4, 'original')")
    upsert(conn, Book(title="t", author=Author(id=4, name="changed")))
    assert rows(conn, "SELECT name FROM author") == [("original",)]
    assert rows(conn, "SELECT author_id FROM book") == [(4,)]


def test_has_many_elements_are_back_patched_and_inserted() -> None:
    conn = memory_db()
    author = Author(name="le guin", books=[Book(title="earthsea"), Book(title="the dispossessed")])

    upsert(conn, author)

    assert all(book.author is author for book in author.books)
    assert rows(conn, "SELECT title, author_id FROM book ORDER BY id") == [
        ("earthsea", author.id),
        ("the dispossessed", author.id),
    ]


def test_has_many_stops_at_first_persisted_element() -> None:
    conn = memory_db()
    conn.execute("INSERT INTO author(id, name) VALUES(1, 'le guin')")
    conn.execute("INSERT INTO book(id, title, author_id) VALUES(1, 'earthsea', 1)")
    author = Author(id=1, name="le guin", books=[Book(id=1, title="earthsea"), Book(title="not written")])

    upsert(conn, author)

    assert rows(conn, "SELECT title FROM book") == [("earthsea",)]
    assert author.books[1].id == 0


def test_new_has_one_target_reconciles_its_own_collections() -> None:
    conn = memory_db()
    inner = Author(name="inner", books=[Book(title="sequel")])
    upsert(conn, Book(title="outer", author=inner))
    assert rows(conn, "SELECT title, author_id FROM book ORDER BY id") == [("sequel", 1), ("outer", 1)]


def test_cyclic_unsaved_has_one_chain_is_rejected() -> None:
    conn = memory_db()
    node = Node(name="loop")
    node.parent = node
    with pytest.raises(InvalidArgError, match="cyclic"):
        upsert(conn, node)

    first = Node(name="first")
    first.parent = Node(name="second", parent=first)
    with pytest.raises(InvalidArgError, match="cyclic"):
        upsert(conn, first)
    assert rows(conn, "SELECT * FROM node") == []


def test_has_one_cycle_between_saved_records_is_written() -> None:
    conn = memory_db()
    first = upsert(conn, Node(name="first"))
    second = upsert(conn, Node(name="second", parent=first))
    first.parent = second
    upsert(conn, first)
    assert rows(conn, "SELECT id, parent_id FROM node ORDER BY id") == [(1, 2), (2, 1)]

def test_many_to_many_end_to_end() -> None:
    conn = memory_db()
    seed_links(conn, [1, 2])
    record = A(id=1, name="a", links=[B(id=2, name="y"), B(id=3, name="z")])

    upsert(conn, record)

    assert rows(conn, "SELECT a_id, b_id FROM j ORDER BY b_id") == [(1, 2), (1, 3)]


def test_many_to_many_applies_exact_set_difference() -> None:
    conn = memory_db()
    seed_links(conn, [1, 2])
    statements: List[str] = []
    conn.set_trace_callback(statements.append)

    upsert(conn, A(id=1, name="a", links=[B(id=2), B(id=3)]))

    writes = junction_writes(statements)
    assert len(writes) == 2
    assert writes[0].startswith("INSERT INTO j")
    assert writes[1].startswith("DELETE FROM j")
    assert {b for (b,) in rows(conn, "SELECT b_id FROM j")} == {2, 3}


def test_many_to_many_sync_is_idempotent() -> None:
    conn = memory_db()
    seed_links(conn, [1])
    record = A(id=1, name="a", links=[B(id=2), B(id=3)])
    upsert(conn, record)
    statements: List[str] = []
    conn.set_trace_callback(statements.append)

    upsert(conn, record)

    assert junction_writes(statements) == []
    assert {b for (b,) in rows(conn, "SELECT b_id FROM j")} == {2, 3}


def test_many_to_many_duplicates_are_linked_once() -> None:
    conn = memory_db()
    seed_links(conn, [])
    upsert(conn, A(id=1, name="a", links=[B(id=2), B(id=2)]))
    assert rows(conn, "SELECT a_id, b_id FROM j") == [(1, 2)]


def test_many_to_many_empty_collection_removes_all_links() -> None:
    conn = memory_db()
    seed_links(conn, [1, 2, 3])
    upsert(conn, A(id=1, name="a"))
    assert rows(conn, "SELECT * FROM j") == []


def test_many_to_many_inserts_new_targets() -> None:
    conn = memory_db()
    record = upsert(conn, A(name="a", links=[B(name="fresh")]))
    assert record.links[0].id == 1
    assert rows(conn, "SELECT a_id, b_id FROM j") == [(record.id, 1)]


def test_many_to_many_conditions_scope_links() -> None:
    conn = memory_db()
    conn.executemany("INSERT INTO label(id, name) VALUES(?, ?)", [(1, "a"), (2, "b"), (3, "c")])
    conn.executemany(
        "INSERT INTO post_label(post_id, label_id, kind) VALUES(?, ?, ?)", [(1, 1, 2), (1, 3, 3)]
    )
    post = Post(id=1, title="p", tags=[Label(id=1), Label(id=2)], topics=[Label(id=2)], pinned=[])

    upsert(conn, post)

    assert sorted(rows(conn, "SELECT label_id, kind FROM post_label")) == [(1, 1), (2, 1), (2, 2), (3, 3)]


def test_many_to_many_with_composite_identities() -> None:
    conn = memory_db()
    conn.executemany("INSERT INTO pair(first_id, second_id, label) VALUES(?, ?, ?)", [(1, 2, "a"), (2, 1, "b")])
    bundle = upsert(conn, Bundle(pairs=[Pair(1, 2), Pair(2, 1)]))
    assert bundle.id == 1
    assert sorted(rows(conn, "SELECT pair_first, pair_second FROM bundle_pair")) == [(1, 2), (2, 1)]

    bundle.pairs = [Pair(2, 1)]
    upsert(conn, bundle)
    assert rows(conn, "SELECT bundle_id, pair_first, pair_second FROM bundle_pair") == [(1, 2, 1)]

    [loaded] = query(conn, Bundle)
    assert [(p.first_id, p.second_id, p.label) for p in loaded.pairs] == [(2, 1, "b")]


def test_junction_write_that_changes_nothing_fails() -> None:
    conn = memory_db()
    seed_links(conn, [1])
    conn.execute(
        "CREATE TRIGGER swallow_j BEFORE DELETE ON j BEGIN SELECT RAISE(IGNORE); END"
    )
    with pytest.raises(ExecutionError, match="did not affect any row") as exc_info:
        upsert(conn, A(id=1, name="a", links=[]))
    assert exc_info.value.sql.startswith("DELETE FROM j")


def test_update_deep_reconciles_relations() -> None:
    conn = memory_db()
    seed_links(conn, [1])
    record = A(id=1, name="renamed", links=[B(id=3)])
    update_deep(conn, record)
    assert rows(conn, "SELECT name FROM a") == [("renamed",)]
    assert rows(conn, "SELECT b_id FROM j") == [(3,)]

    update(conn, A(id=1, name="plain", links=[]))
    assert rows(conn, "SELECT b_id FROM j") == [(3,)]


def test_relation_values_must_match_their_kind() -> None:
    conn = memory_db()
    with pytest.raises(RelationTypeError):
        upsert(conn, A(id=1, name="a", links=B(id=1)))  # type: ignore[arg-type]
    with pytest.raises(RelationTypeError):
        upsert(conn, A(id=1, name="a", links=[Simple(id=1)]))  # type: ignore[list-item]
    with pytest.raises(RelationTypeError):
        upsert(conn, Node(name="n", parent="not a node"))  # type: ignore[arg-type]


def test_round_trip_through_loader() -> None:
    conn = memory_db()
    author = upsert(conn, Author(name="herbert", books=[Book(title="dune")]))
    [loaded] = query(conn, Author, QueryOptions(where={"id": author.id}))
    assert loaded.name == "herbert"
    assert [b.title for b in loaded.books] == ["dune"]
