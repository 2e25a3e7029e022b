"""
Prompt templates and reply parsers for the summarization collaborator.
"""

from dataclasses import dataclass, field

FILE_CONTENT_PREVIEW = 2000
PATCH_PREVIEW = 3000
MAX_LISTED_FILES = 20

FILE_SUMMARY_PROMPT = """Analyze this code file and provide a brief summary.

File: {path}
Language: {language}

Content (first 2000 chars):
{content}

Respond with exactly 3 lines:
1. SUMMARY: A one-sentence summary of what this file does
2. PURPOSE: The main purpose (e.g., "API handler", "Data model", "Utility functions", "Configuration")
3. EXPORTS: Key exports/functions/classes (comma-separated, max 5)"""

FOLDER_SUMMARY_PROMPT = """Analyze this folder structure and provide a brief summary.

Folder: {path}
Files: {files}
Subfolders: {subfolders}

Respond with exactly 2 lines:
1. SUMMARY: A one-sentence summary of what this folder contains
2. PURPOSE: The main purpose (e.g., "API routes", "Database models", "UI components", "Utilities")"""

CODEBASE_SUMMARY_PROMPT = """Analyze this codebase structure and provide a brief summary.

Name: {name}
Tech Stack: {tech_stack}
Main Folders: {folders}
Total Files: {total_files}

Respond with exactly 2 lines:
1. SUMMARY: A 2-3 sentence summary of what this project does and its architecture
2. TECH: Primary technologies and frameworks used"""

COMMIT_SUMMARY_PROMPT = """Summarize this git commit in one or two sentences, focusing on what changed and why.

Message: {message}
Files changed: {files}

Diff preview:
{patch}"""

DAY_SUMMARY_PROMPT = """Summarize these git commits from one day in one sentence. Be brief and professional.

{commits}"""

WEEK_SUMMARY_PROMPT = """Summarize the following daily worklogs into a brief, professional summary of the week's work. Write 2-3 sentences highlighting the main themes and accomplishments.

{days}"""

MONTH_SUMMARY_PROMPT = """Summarize the following weekly worklogs into a short overview of the month's work. Write 3-4 sentences covering the main themes, features and fixes.

{weeks}"""

BRANCH_SUMMARY_PROMPT = """Summarize the work done on the branch "{branch}" as a short story of what was built. Write 2-3 sentences.

Stats: {stats}

Commits:
{commits}"""


@dataclass
class FileSummary:
    summary: str = ""
    purpose: str = ""
    key_exports: list[str] = field(default_factory=list)


def build_file_prompt(path: str, language: str, content: str) -> str:
    return FILE_SUMMARY_PROMPT.format(
        path=path, language=language, content=content[:FILE_CONTENT_PREVIEW]
    )


def build_folder_prompt(path: str, files: list[str], subfolders: list[str]) -> str:
    return FOLDER_SUMMARY_PROMPT.format(
        path=path,
        files=", ".join(files[:MAX_LISTED_FILES]),
        subfolders=", ".join(subfolders),
    )


def build_codebase_prompt(
    name: str, tech_stack: dict[str, int], folders: list[str], total_files: int
) -> str:
    tech = [lang for lang, count in sorted(tech_stack.items()) if count > 2]
    return CODEBASE_SUMMARY_PROMPT.format(
        name=name,
        tech_stack=", ".join(tech),
        folders=", ".join(folders),
        total_files=total_files,
    )


def build_commit_prompt(message: str, files: list[str], patch: str) -> str:
    listed = files[:MAX_LISTED_FILES]
    if len(files) > MAX_LISTED_FILES:
        listed.append(f"... and {len(files) - MAX_LISTED_FILES} more")
    return COMMIT_SUMMARY_PROMPT.format(
        message=message, files=", ".join(listed), patch=patch[:PATCH_PREVIEW]
    )


def build_day_prompt(commit_lines: list[str]) -> str:
    return DAY_SUMMARY_PROMPT.format(commits="\n".join(commit_lines))


def build_week_prompt(day_contents: list[str]) -> str:
    return WEEK_SUMMARY_PROMPT.format(days="\n\n".join(day_contents))


def build_month_prompt(week_contents: list[str]) -> str:
    return MONTH_SUMMARY_PROMPT.format(weeks="\n\n".join(week_contents))


def build_branch_prompt(branch: str, commit_lines: list[str], stats: str) -> str:
    return BRANCH_SUMMARY_PROMPT.format(
        branch=branch, stats=stats, commits="\n".join(commit_lines)
    )


def _field(line: str, name: str) -> str | None:
    # tolerate "1. SUMMARY:" numbering
    stripped = line.strip().lstrip("0123456789. ")
    prefix = f"{name}:"
    if stripped.upper().startswith(prefix):
        return stripped[len(prefix):].strip()
    return None


def parse_file_summary(response: str) -> FileSummary:
    result = FileSummary()
    for line in response.splitlines():
        summary = _field(line, "SUMMARY")
        purpose = _field(line, "PURPOSE")
        exports = _field(line, "EXPORTS")
        if summary is not None:
            result.summary = summary
        elif purpose is not None:
            result.purpose = purpose
        elif exports is not None and exports not in ("", "None", "N/A"):
            result.key_exports = [e.strip() for e in exports.split(",") if e.strip()]
    if not result.summary and response.strip():
        result.summary = response.strip().splitlines()[0]
    return result


def parse_codebase_summary(response: str) -> str:
    for line in response.splitlines():
        summary = _field(line, "SUMMARY")
        if summary is not None:
            return summary
    return response.strip()
