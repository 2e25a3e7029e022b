"""
Structural indexer.

Reconciles a working-tree scan against the folder and file rows stored for
a codebase. A file's sha256 fingerprint is the only signal of change:
unchanged files are skipped entirely, changed and new files are
summarized, embedded and upserted, removed paths are deleted in batches.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import structlog

from . import repository as repo
from .config import Settings
from .manager import ProfileStore
from .models import Codebase, embedding_to_json
from .prompts import (
    FileSummary,
    build_codebase_prompt,
    build_file_prompt,
    build_folder_prompt,
    parse_codebase_summary,
    parse_file_summary,
)
from .scanner import ScannedFile, ScannedFolder, ScanResult, detect_tech_stack, scan_codebase
from .summarizer import (
    CollaboratorError,
    Summarizer,
    embed_with_deadline,
    summarize_with_deadline,
)

logger = structlog.get_logger(__name__)

SKIP_SUMMARY_EXTENSIONS = {".json", ".yaml", ".yml", ".toml", ".ini", ".env", ".md", ".txt"}
MIN_SUMMARY_CONTENT = 100
EMBED_CONTENT_PREVIEW = 2000


@dataclass
class IndexReport:
    """Outcome of one reindex pass."""

    codebase_id: int = 0
    new_files: int = 0
    changed_files: int = 0
    unchanged_files: int = 0
    removed_files: int = 0
    removed_folders: int = 0
    upserted_files: int = 0
    upserted_folders: int = 0
    summarized: int = 0
    embedded: int = 0
    deferred: int = 0
    failed: list[str] = field(default_factory=list)


def should_summarize(file: ScannedFile) -> bool:
    if not file.content or not file.language:
        return False
    if len(file.content) < MIN_SUMMARY_CONTENT:
        return False
    return file.extension not in SKIP_SUMMARY_EXTENSIONS


def embedding_text(path: str, summary: str, purpose: str, content: str = "") -> str:
    if summary:
        return f"{path}\n{summary}\n{purpose}".strip()
    return f"{path}\n{content[:EMBED_CONTENT_PREVIEW]}".strip()


class StructuralIndexer:
    """Keeps folder and file records in step with a working tree."""

    def __init__(
        self,
        store: ProfileStore,
        summarizer: Optional[Summarizer] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.summarizer = summarizer
        self.settings = settings or store.settings

    def reindex(
        self,
        root: str | Path,
        scan: Optional[ScanResult] = None,
        force: bool = False,
        default_branch: Optional[str] = None,
    ) -> IndexReport:
        """
        Reconcile the stored index for ``root`` with its working tree.

        Args:
            root: Repository working tree
            scan: Pre-computed scan; scanned from ``root`` when omitted
            force: Treat every file as changed
            default_branch: Default branch recorded on a newly created codebase

        Returns:
            IndexReport with per-category counts
        """
        root_path = Path(root).resolve()
        if scan is None:
            scan = scan_codebase(
                root_path,
                max_file_size=self.settings.max_file_size,
                max_content_size=self.settings.max_content_size,
            )

        with self.store.transaction() as session:
            codebase = repo.get_codebase_by_path(session, str(root_path))
            if codebase is None:
                codebase = repo.get_or_create_codebase(
                    session, str(root_path), scan.name, default_branch or "main"
                )
            stored_hashes = repo.get_existing_file_hashes(session, codebase.id)
            stored_folders = {
                path: (f.id, f.name, f.depth, f.parent_path, f.file_count)
                for path, f in repo.get_existing_folders(session, codebase.id).items()
            }

        report = IndexReport(codebase_id=codebase.id)
        log = logger.bind(codebase=str(root_path))

        live = scan.fingerprints()
        removed_files = sorted(set(stored_hashes) - set(live))
        removed_folders = sorted(set(stored_folders) - set(scan.folders))
        if removed_files or removed_folders:
            with self.store.transaction() as session:
                report.removed_files = repo.delete_file_indexes_by_paths(
                    session, codebase.id, removed_files
                )
                report.removed_folders = repo.delete_folders_by_paths(
                    session, codebase.id, removed_folders
                )

        folder_ids = self._index_folders(codebase, scan, stored_folders, report)

        budget = self.settings.max_files
        for file in scan.files:
            if file.path not in stored_hashes:
                report.new_files += 1
            elif stored_hashes[file.path] == file.content_hash and not force:
                report.unchanged_files += 1
                continue
            else:
                report.changed_files += 1

            summarize = self.summarizer is not None and should_summarize(file)
            if summarize and budget <= 0:
                summarize = False
                report.deferred += 1
            elif summarize:
                budget -= 1

            self._index_file(codebase.id, file, folder_ids.get(file.folder_path), summarize, report)

        self._update_codebase(codebase, scan, report)

        log.info(
            "reindex_complete",
            new=report.new_files,
            changed=report.changed_files,
            unchanged=report.unchanged_files,
            removed=report.removed_files,
            failed=len(report.failed),
        )
        return report

    def _index_folders(
        self,
        codebase: Codebase,
        scan: ScanResult,
        stored: dict[str, tuple],
        report: IndexReport,
    ) -> dict[str, int]:
        folder_ids = {path: values[0] for path, values in stored.items()}

        # parents before children
        for folder in sorted(scan.folders.values(), key=lambda f: (f.depth, f.path)):
            metadata = (folder.name, folder.depth, folder.parent_path, folder.file_count)
            previous = stored.get(folder.path)
            if previous is not None and previous[1:] == metadata:
                continue

            fields = {
                "name": folder.name,
                "depth": folder.depth,
                "parent_path": folder.parent_path,
                "file_count": folder.file_count,
            }
            if previous is None:
                fields.update(self._summarize_folder(folder, report))

            with self.store.transaction() as session:
                row = repo.upsert_folder(session, codebase.id, folder.path, **fields)
                folder_ids[folder.path] = row.id
            report.upserted_folders += 1

        return folder_ids

    def _summarize_folder(self, folder: ScannedFolder, report: IndexReport) -> dict:
        if (
            self.summarizer is None
            or folder.depth > self.settings.folder_summary_depth
            or not folder.files
        ):
            return {}

        timeout = self.settings.collaborator_timeout
        prompt = build_folder_prompt(
            folder.path,
            [Path(f).name for f in folder.files],
            [Path(s).name for s in folder.subfolders],
        )
        try:
            parsed = parse_file_summary(
                summarize_with_deadline(self.summarizer, "folder", prompt, timeout, key=folder.path)
            )
            report.summarized += 1
            fields = {"summary": parsed.summary, "purpose": parsed.purpose}
            vector = embed_with_deadline(
                self.summarizer,
                embedding_text(folder.path, parsed.summary, parsed.purpose),
                timeout,
                key=folder.path,
            )
            if vector:
                fields["embedding"] = embedding_to_json(vector)
                report.embedded += 1
            return fields
        except CollaboratorError as e:
            logger.warning("folder_summary_failed", folder=folder.path, error=str(e))
            report.failed.append(folder.path)
            return {}

    def _index_file(
        self,
        codebase_id: int,
        file: ScannedFile,
        folder_id: Optional[int],
        summarize: bool,
        report: IndexReport,
    ) -> None:
        fields = {
            "folder_id": folder_id,
            "name": file.name,
            "extension": file.extension,
            "language": file.language,
            "size_bytes": file.size,
            "line_count": file.line_count,
            "content_hash": file.content_hash,
            "summary": None,
            "purpose": None,
            "key_exports": None,
            "embedding": None,
        }

        if summarize:
            timeout = self.settings.collaborator_timeout
            try:
                reply = summarize_with_deadline(
                    self.summarizer,
                    "file",
                    build_file_prompt(file.path, file.language or "", file.content),
                    timeout,
                    key=file.path,
                )
                parsed: FileSummary = parse_file_summary(reply)
                report.summarized += 1
                fields["summary"] = parsed.summary
                fields["purpose"] = parsed.purpose
                fields["key_exports"] = json.dumps(parsed.key_exports)

                vector = embed_with_deadline(
                    self.summarizer,
                    embedding_text(file.path, parsed.summary, parsed.purpose, file.content),
                    timeout,
                    key=file.path,
                )
                if vector:
                    fields["embedding"] = embedding_to_json(vector)
                    report.embedded += 1
            except CollaboratorError as e:
                # a NULL fingerprint never matches, so the next pass retries
                logger.warning("file_summary_failed", file=file.path, error=str(e))
                report.failed.append(file.path)
                fields["content_hash"] = None

        with self.store.transaction() as session:
            repo.upsert_file_index(session, codebase_id, file.path, **fields)
        report.upserted_files += 1

    def _update_codebase(self, codebase: Codebase, scan: ScanResult, report: IndexReport) -> None:
        summary = None
        if codebase.indexed_at is None and self.summarizer is not None and scan.files:
            prompt = build_codebase_prompt(
                scan.name,
                detect_tech_stack(scan.files),
                [f.path for f in scan.folders.values() if f.depth == 1],
                len(scan.files),
            )
            try:
                summary = parse_codebase_summary(
                    summarize_with_deadline(
                        self.summarizer,
                        "codebase",
                        prompt,
                        self.settings.collaborator_timeout,
                        key=str(scan.root),
                    )
                )
            except CollaboratorError as e:
                logger.warning("codebase_summary_failed", codebase=str(scan.root), error=str(e))

        with self.store.transaction() as session:
            repo.update_codebase_index(
                session, codebase.id, detect_tech_stack(scan.files), summary=summary
            )
