import argparse
import json
import logging
import atexit
from pathlib import Path

from .config import (
    DEFAULT_BATCH_LIMIT,
    DEFAULT_SIMILAR_USERS_LIMIT,
    SCORE_RETENTION_DAYS,
    BATCH_MAX_WORKERS,
)
from .database import init_db, close_pool, run_maintenance
from .metadata import ContentMetadata, StoredMetadataProvider
from .service import TasteMatchService

logger = logging.getLogger(__name__)

atexit.register(close_pool)

IMPORT_CHUNK_SIZE = 1000


def _make_service(args: argparse.Namespace) -> TasteMatchService:
    init_db()
    return TasteMatchService(max_workers=getattr(args, "workers", None) or BATCH_MAX_WORKERS)


def _read_records(path: str) -> list[dict]:
    """Load a JSON array or JSON-lines file into a list of dicts."""
    text = Path(path).read_text(encoding="utf-8").strip()
    if not text:
        return []
    if text.startswith("["):
        return json.loads(text)
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def _batched(items, size=IMPORT_CHUNK_SIZE):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _top(scores: dict[str, int], n: int = 10) -> list[tuple[str, int]]:
    return sorted(scores.items(), key=lambda x: (-x[1], x[0]))[:n]


def cmd_import_history(args: argparse.Namespace) -> None:
    """Import watch history rows (user_id, content_id, status, ...)."""
    service = _make_service(args)
    records = _read_records(args.file)

    imported = 0
    for chunk in _batched(records):
        imported += service.history.record_items(chunk)

    users = sorted({str(r['user_id']) for r in records})
    for user_id in users:
        service.profile_cache.invalidate(user_id)

    logger.info(f"Imported {imported} watch items for {len(users)} users from {args.file}")


def cmd_import_metadata(args: argparse.Namespace) -> None:
    """Import content metadata rows (content_id, media_type, genres, cast, crew)."""
    service = _make_service(args)
    records = _read_records(args.file)
    store = StoredMetadataProvider()

    stored = 0
    for chunk in _batched(records):
        stored += store.store_many([
            (str(r['content_id']), r.get('media_type', 'movie'), ContentMetadata.from_dict(r))
            for r in chunk
        ])

    # taste maps cached before the import lack this metadata
    affected = service.metadata_changed(
        (str(r['content_id']), r.get('media_type', 'movie')) for r in records
    )
    logger.info(f"Imported metadata for {stored} titles from {args.file} ({len(affected)} users affected)")


def cmd_taste_map(args: argparse.Namespace) -> None:
    """Show a user's taste map."""
    service = _make_service(args)
    taste_map = service.get_or_compute_taste_map(args.user)

    if args.json:
        print(json.dumps(taste_map.to_dict(), indent=2))
        return

    if taste_map.is_empty:
        logger.info(f"No completed history for '{args.user}'")
        return

    dist = taste_map.rating_distribution
    behavior = taste_map.behavior_profile
    logger.info(f"\nTaste map for {args.user} ({taste_map.item_count} titles)")
    logger.info(f"  Average rating: {taste_map.average_rating:.1f}")
    logger.info(f"  Ratings: {dist.high}% high, {dist.medium}% medium, {dist.low}% low")
    logger.info(
        f"  Behavior: {behavior.completion_rate}% completion, "
        f"{behavior.rewatch_rate}% rewatch, {behavior.drop_rate}% drop"
    )
    logger.info(f"  Types: {taste_map.type_profile.movie}% movies, {taste_map.type_profile.tv}% tv")

    if taste_map.genre_profile:
        logger.info("\nTop genres:")
        for genre, score in _top(taste_map.genre_profile):
            logger.info(f"  {genre}: {score}")

    if taste_map.person_profiles.directors:
        logger.info("\nTop directors:")
        for name, score in _top(taste_map.person_profiles.directors):
            logger.info(f"  {name}: {score}")

    if taste_map.person_profiles.actors:
        logger.info("\nTop actors:")
        for name, score in _top(taste_map.person_profiles.actors):
            logger.info(f"  {name}: {score}")


def cmd_compare(args: argparse.Namespace) -> None:
    """Compare two users."""
    service = _make_service(args)

    if args.store:
        result = service.compute_and_store_similarity_score(args.user_a, args.user_b, "manual")
        logger.info(f"\n{args.user_a} vs {args.user_b} (stored)")
        logger.info(f"  Overall match: {result.overall_match:.2%}")
        return

    comparison = service.compare_users(args.user_a, args.user_b)
    result = comparison.result
    logger.info(f"\n{args.user_a} vs {args.user_b}")
    logger.info(f"  Overall match:      {result.overall_match:.2%}")
    logger.info(f"  Taste similarity:   {result.taste_similarity:.3f}")
    logger.info(f"  Rating correlation: {result.rating_correlation:+.3f}")
    logger.info(f"  Person overlap:     {result.person_overlap:.3f}")
    logger.info(f"  Genre agreement:    {result.genre_rating_similarity:.0%}")

    if not args.detail:
        return

    patterns = result.rating_patterns
    logger.info(f"\nShared titles: {patterns.total_shared}")
    if patterns.total_shared:
        logger.info(
            f"  {patterns.perfect_matches} identical, {patterns.close_matches} within 1, "
            f"{patterns.moderate_matches} within 2, {patterns.large_difference} further apart"
        )
        logger.info(f"  Average ratings: {patterns.avg_rating_a} vs {patterns.avg_rating_b}")
        logger.info(f"  Both loved: {patterns.positive_ratings_percentage}%")

    for label, people in (("directors", comparison.persons.directors), ("actors", comparison.persons.actors)):
        if people.mutual:
            logger.info(f"\nShared {label} (jaccard {people.jaccard_index:.2f}):")
            for match in people.mutual[:10]:
                logger.info(f"  {match.name}: {match.score_a} / {match.score_b}")


def cmd_similar_users(args: argparse.Namespace) -> None:
    """List users with similar taste."""
    service = _make_service(args)
    matches = service.get_similar_users(args.user, limit=args.limit, fresh_only=args.fresh_only)

    if not matches:
        logger.info(f"No similar users found for '{args.user}'")
        return

    logger.info(f"\nUsers similar to {args.user}:")
    logger.info("-" * 50)
    for match in matches:
        logger.info(
            f"  {match.user_id}: {match.result.overall_match:.2%} match "
            f"(taste {match.result.taste_similarity:.2f})"
        )


def cmd_compute_similarities(args: argparse.Namespace) -> None:
    """Batch-compute similarity scores for a page of active users."""
    service = _make_service(args)

    def _progress(update: dict) -> None:
        logger.debug(f"Progress: {update['processed']}/{update['total']} users, {update['errors']} errors")

    summary = service.run_batch_similarity_computation(
        limit=args.limit,
        offset=args.offset,
        on_progress=_progress,
        show_progress=not args.quiet,
    )

    logger.info(
        f"\nProcessed {summary.processed} users, stored {summary.computed} scores "
        f"in {summary.duration_seconds:.1f}s ({summary.pairs_per_second}/s)"
    )
    if summary.errors:
        logger.warning(f"{summary.errors} errors; first {len(summary.errors_list)}:")
        for err in summary.errors_list:
            logger.warning(f"  {err.user_a} / {err.user_b or 'unknown'}: {err.error}")


def cmd_similarity_stats(args: argparse.Namespace) -> None:
    """Show stored similarity statistics."""
    service = _make_service(args)
    stats = service.store.get_similarity_score_stats()

    logger.info("\nSimilarity scores")
    logger.info(f"  Stored pairs: {stats['total_scores']}")
    logger.info(f"  Users covered: {stats['unique_users']}")
    if stats['average_match'] is not None:
        logger.info(f"  Average match: {stats['average_match']:.4f}")
    logger.info(f"  Last computed: {stats['last_computed'] or 'never'}")
    logger.info(f"  Last scheduler run: {stats['scheduler_last_run'] or 'never'}")


def cmd_prune_similarities(args: argparse.Namespace) -> None:
    """Delete similarity scores past retention."""
    service = _make_service(args)
    deleted = service.store.delete_old_similarity_scores(args.max_age_days)
    logger.info(f"Pruned {deleted} similarity scores older than {args.max_age_days} days")
    if args.maintenance and deleted:
        run_maintenance(vacuum=True, analyze=True)


def cmd_history_summary(args: argparse.Namespace) -> None:
    """Show per-status counts for a user."""
    service = _make_service(args)
    counts = service.history.status_counts(args.user)
    logger.info(f"\nHistory for {args.user}")
    for status, count in counts.items():
        logger.info(f"  {status}: {count}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Taste profiles and user similarity")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_history_parser = subparsers.add_parser("import-history", help="Import watch history (JSON or JSON lines)")
    import_history_parser.add_argument("file", help="Path to the history file")
    import_history_parser.set_defaults(func=cmd_import_history)

    import_meta_parser = subparsers.add_parser("import-metadata", help="Import content metadata (JSON or JSON lines)")
    import_meta_parser.add_argument("file", help="Path to the metadata file")
    import_meta_parser.set_defaults(func=cmd_import_metadata)

    history_parser = subparsers.add_parser("history", help="Show a user's status counts")
    history_parser.add_argument("user", help="User id")
    history_parser.set_defaults(func=cmd_history_summary)

    taste_parser = subparsers.add_parser("taste-map", help="Show a user's taste map")
    taste_parser.add_argument("user", help="User id")
    taste_parser.add_argument("--json", action="store_true", help="Print the raw taste map as JSON")
    taste_parser.set_defaults(func=cmd_taste_map)

    compare_parser = subparsers.add_parser("compare", help="Compare two users")
    compare_parser.add_argument("user_a", help="First user id")
    compare_parser.add_argument("user_b", help="Second user id")
    compare_parser.add_argument("--detail", action="store_true", help="Show rating patterns and shared people")
    compare_parser.add_argument("--store", action="store_true", help="Persist the score (source 'manual')")
    compare_parser.set_defaults(func=cmd_compare)

    similar_parser = subparsers.add_parser("similar-users", help="Find users with similar taste")
    similar_parser.add_argument("user", help="User id")
    similar_parser.add_argument("--limit", type=int, default=DEFAULT_SIMILAR_USERS_LIMIT, help="Maximum users to list")
    similar_parser.add_argument("--fresh-only", action="store_true", help="Ignore stored scores older than the staleness window")
    similar_parser.set_defaults(func=cmd_similar_users)

    batch_parser = subparsers.add_parser("compute-similarities", help="Batch-compute similarity scores")
    batch_parser.add_argument("--limit", type=int, default=DEFAULT_BATCH_LIMIT, help="Active users per run")
    batch_parser.add_argument("--offset", type=int, default=0, help="Skip this many active users")
    batch_parser.add_argument("--workers", type=int, default=BATCH_MAX_WORKERS, help="Parallel pair computations")
    batch_parser.add_argument("--quiet", action="store_true", help="Hide the progress bar")
    batch_parser.set_defaults(func=cmd_compute_similarities)

    stats_parser = subparsers.add_parser("similarity-stats", help="Show stored similarity statistics")
    stats_parser.set_defaults(func=cmd_similarity_stats)

    prune_parser = subparsers.add_parser("prune-similarities", help="Delete old similarity scores")
    prune_parser.add_argument("--max-age-days", type=int, default=SCORE_RETENTION_DAYS, help="Retention in days")
    prune_parser.add_argument("--maintenance", action="store_true", default=False, help="Run VACUUM/ANALYZE afterwards")
    prune_parser.set_defaults(func=cmd_prune_similarities)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    args.func(args)


if __name__ == "__main__":
    main()
