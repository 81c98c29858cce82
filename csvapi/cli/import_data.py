# ABOUTME: CLI command for importing CSV and Excel files as datasets
# ABOUTME: Runs the ingestion pipeline from the command line and lists existing datasets

import argparse
import logging
import sys
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from csvapi.config import get_settings
from csvapi.database import init_db
from csvapi.models.database import Dataset, Project
from csvapi.models.errors import CsvApiError
from csvapi.services.blob_store import LocalBlobStore
from csvapi.services.ingestion import IngestionOrchestrator, IngestionRequest
from csvapi.utils.csv_parser import parse_upload


def import_file(file_path: str, user_id: str, project: str | None = None, plan: str = "free",
                dry_run: bool = False) -> None:
    """
    Import a file as a new dataset.

    Args:
        file_path: Path to the CSV or .xlsx file
        user_id: Owner of the project
        project: Project name (defaults to the file name)
        plan: Plan whose capacity limits apply
        dry_run: If True, preview the inferred schema without database changes
    """
    path = Path(file_path)
    file_bytes = path.read_bytes()

    if dry_run:
        parsed = parse_upload(path.name, file_bytes)
        print("\nDry run - no database changes will be made")
        if parsed.errors:
            print(f"Parse errors: {', '.join(parsed.errors)}")
            return
        print(f"Would import {parsed.row_count} rows with {len(parsed.schema)} columns:")
        for column in parsed.schema:
            print(f"  - {column.name}: {column.type.value}{' (nullable)' if column.nullable else ''}")
        return

    settings = get_settings()
    engine = create_engine(settings.database_url)
    Session = sessionmaker(bind=engine)
    init_db(engine)

    session = Session()
    try:
        print(f"Importing {path.name} for user {user_id}...")
        orchestrator = IngestionOrchestrator(session, settings, LocalBlobStore(settings.upload_dir))
        result = orchestrator.ingest(IngestionRequest(
            file_bytes=file_bytes,
            filename=path.name,
            user_id=user_id,
            project_name=project,
            plan=plan,
        ))

        print(f"Import completed successfully! Imported {result.row_count} rows into {result.table_name}")
        print(f"Endpoint: {result.api_endpoint}")
        print(f"API key (shown once): {result.api_key}")

    finally:
        session.close()
        engine.dispose()


def list_datasets() -> None:
    """List all datasets that have been imported into the database."""
    settings = get_settings()
    engine = create_engine(settings.database_url)
    Session = sessionmaker(bind=engine)
    init_db(engine)

    session = Session()
    try:
        rows = (
            session.query(Dataset, Project)
            .join(Project, Dataset.project_id == Project.id)
            .order_by(Project.slug, Dataset.name)
            .all()
        )

        if not rows:
            print("No data has been imported yet.")
        else:
            print("Available datasets:")
            for dataset, project in rows:
                print(f"  - /api/v1/{project.slug}/{dataset.name} "
                      f"({dataset.row_count} rows, {dataset.status})")

    finally:
        session.close()
        engine.dispose()


def main():
    """CLI entry point for import command."""
    parser = argparse.ArgumentParser(description="Import CSV files as queryable datasets")
    parser.add_argument("file_path", nargs='?', help="Path to CSV or .xlsx file")
    parser.add_argument("--user-id", help="Owner of the project")
    parser.add_argument("--project", help="Project name (defaults to the file name)")
    parser.add_argument("--plan", default="free", help="Plan whose limits apply (free, pro, enterprise)")
    parser.add_argument("--dry-run", action="store_true", help="Preview the inferred schema without importing")
    parser.add_argument("--list-datasets", action="store_true", help="List datasets in the database")

    args = parser.parse_args()

    logging.basicConfig(level=get_settings().log_level)

    if args.list_datasets:
        list_datasets()
        return

    if not args.file_path:
        parser.error("file_path is required for import operations")
    if not args.user_id and not args.dry_run:
        parser.error("--user-id is required for import operations")

    file_path = Path(args.file_path)
    if not file_path.exists():
        print(f"Error: File not found: {args.file_path}")
        sys.exit(1)

    try:
        import_file(
            file_path=str(file_path),
            user_id=args.user_id,
            project=args.project,
            plan=args.plan,
            dry_run=args.dry_run,
        )
    except CsvApiError as e:
        print(f"Error during import: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
