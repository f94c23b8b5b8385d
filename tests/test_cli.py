import json
import sys

import pytest

from tastematch import cli
from tastematch.cache import TTLCache
from tastematch.history import WatchHistoryStore
from tastematch.metadata import StoredMetadataProvider
from tastematch.profile_cache import taste_map_key
from tastematch.service import TasteMatchService


def test_main_dispatches_to_subcommand(monkeypatch):
    called = {}

    def fake_stats(args):
        called["command"] = args.command

    monkeypatch.setattr(cli, "cmd_similarity_stats", fake_stats)
    monkeypatch.setattr(sys, "argv", ["prog", "similarity-stats"])

    cli.main()

    assert called["command"] == "similarity-stats"


def test_cli_parses_batch_args(monkeypatch):
    captured = {}

    def fake_batch(args):
        captured.update(vars(args))

    monkeypatch.setattr(cli, "cmd_compute_similarities", fake_batch)

    cli.main(["compute-similarities", "--limit", "25", "--offset", "50", "--workers", "8", "--quiet"])

    assert captured["limit"] == 25
    assert captured["offset"] == 50
    assert captured["workers"] == 8
    assert captured["quiet"] is True


def test_cli_parses_compare_flags(monkeypatch):
    captured = {}
    monkeypatch.setattr(cli, "cmd_compare", lambda args: captured.update(vars(args)))

    cli.main(["compare", "alice", "bob", "--detail"])

    assert (captured["user_a"], captured["user_b"]) == ("alice", "bob")
    assert captured["detail"] is True
    assert captured["store"] is False


def test_cli_parses_similar_users_flags(monkeypatch):
    captured = {}
    monkeypatch.setattr(cli, "cmd_similar_users", lambda args: captured.update(vars(args)))

    cli.main(["similar-users", "alice"])
    assert captured["fresh_only"] is False

    cli.main(["similar-users", "alice", "--fresh-only", "--limit", "5"])
    assert captured["fresh_only"] is True
    assert captured["limit"] == 5


def test_missing_subcommand_exits():
    with pytest.raises(SystemExit):
        cli.main([])


def test_read_records_accepts_array_and_json_lines(tmp_path):
    array_file = tmp_path / "items.json"
    array_file.write_text(json.dumps([{"user_id": "a"}, {"user_id": "b"}]))
    lines_file = tmp_path / "items.jsonl"
    lines_file.write_text('{"user_id": "a"}\n\n{"user_id": "b"}\n')
    empty_file = tmp_path / "empty.json"
    empty_file.write_text("  \n")

    assert cli._read_records(str(array_file)) == [{"user_id": "a"}, {"user_id": "b"}]
    assert cli._read_records(str(lines_file)) == [{"user_id": "a"}, {"user_id": "b"}]
    assert cli._read_records(str(empty_file)) == []


def test_top_orders_by_score_then_name():
    assert cli._top({"b": 50, "a": 50, "c": 90}, n=2) == [("c", 90), ("a", 50)]


def test_import_and_taste_map_end_to_end(fresh_db, tmp_path, recent, capsys):
    history_file = tmp_path / "history.jsonl"
    history_file.write_text("\n".join(json.dumps(row) for row in [
        {"user_id": "alice", "content_id": "m1", "status": "watched", "user_rating": 9, "added_at": recent},
        {"user_id": "alice", "content_id": "m2", "status": "watched", "user_rating": 6, "added_at": recent},
        {"user_id": "alice", "content_id": "m3", "status": "want"},
    ]))
    metadata_file = tmp_path / "metadata.json"
    metadata_file.write_text(json.dumps([
        {"content_id": "m1", "genres": ["Drama"], "crew": [{"name": "Ozu", "job": "Director"}]},
        {"content_id": "m2", "media_type": "movie", "genres": ["Drama", "Comedy"], "cast": [{"name": "Ryu"}]},
    ]))

    cli.main(["import-history", str(history_file)])
    cli.main(["import-metadata", str(metadata_file)])

    assert WatchHistoryStore().status_counts("alice")["watched"] == 2
    assert StoredMetadataProvider().lookup("m1", "movie").directors == ["Ozu"]

    capsys.readouterr()
    cli.main(["taste-map", "alice", "--json"])
    taste_map = json.loads(capsys.readouterr().out)

    assert taste_map["item_count"] == 2
    assert taste_map["genre_profile"] == {"Drama": 75, "Comedy": 60}
    assert taste_map["person_profiles"]["directors"] == {"Ozu": 90}
    assert taste_map["person_profiles"]["actors"] == {"Ryu": 60}


def test_import_history_rejects_invalid_rows(fresh_db, tmp_path):
    history_file = tmp_path / "history.json"
    history_file.write_text(json.dumps([{"user_id": "alice", "content_id": "m1", "status": "loved"}]))

    with pytest.raises(ValueError):
        cli.main(["import-history", str(history_file)])


def test_compare_store_and_stats(three_users, fresh_db, caplog):
    with caplog.at_level("INFO"):
        cli.main(["compare", "bob", "alice", "--store"])
        cli.main(["similarity-stats"])

    assert "(stored)" in caplog.text
    assert "Stored pairs: 1" in caplog.text

    with fresh_db.get_db(read_only=True) as conn:
        row = conn.execute("SELECT user_a, user_b, computed_by FROM similarity_scores").fetchone()
    assert tuple(row) == ("alice", "bob", "manual")


def test_prune_similarities(three_users, caplog):
    cli.main(["compare", "alice", "carol", "--store"])

    with caplog.at_level("INFO"):
        cli.main(["prune-similarities", "--max-age-days", "1"])

    assert "Pruned 0 similarity scores" in caplog.text


def test_compare_detail_output(three_users, caplog):
    with caplog.at_level("INFO"):
        cli.main(["compare", "alice", "bob", "--detail"])

    assert "Shared titles: 3" in caplog.text
    assert "Average ratings: 6.7 vs 6.7" in caplog.text


def test_import_metadata_drops_cached_taste_maps(three_users, tmp_path, monkeypatch, caplog):
    service = TasteMatchService(history=three_users, metadata=StoredMetadataProvider(), cache=TTLCache())
    monkeypatch.setattr(cli, "_make_service", lambda args: service)
    service.get_or_compute_taste_map("alice")
    service.get_or_compute_taste_map("carol")

    metadata_file = tmp_path / "metadata.json"
    metadata_file.write_text(json.dumps([
        {"content_id": "m1", "genres": ["Drama"], "crew": [{"name": "Ozu", "job": "Director"}]},
    ]))
    with caplog.at_level("INFO"):
        cli.main(["import-metadata", str(metadata_file)])

    assert "(2 users affected)" in caplog.text
    assert service.cache.get(taste_map_key("alice")) is None
    assert service.cache.get(taste_map_key("carol")) is not None
    assert service.get_or_compute_taste_map("alice").person_profiles.directors == {"Ozu": 90}
