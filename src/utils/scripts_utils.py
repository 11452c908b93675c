import os
from collections import Counter

LANGUAGE_EXTENSIONS = {
    '.js': 'javascript',
    '.jsx': 'javascript',
    '.mjs': 'javascript',
    '.ts': 'typescript',
    '.tsx': 'typescript',
    '.py': 'python',
    '.java': 'java',
    '.go': 'go',
    '.rs': 'rust',
    '.cpp': 'cpp',
    '.cc': 'cpp',
    '.c': 'c',
    '.h': 'c',
    '.cs': 'csharp',
    '.php': 'php',
    '.rb': 'ruby',
    '.swift': 'swift',
    '.kt': 'kotlin',
    '.scala': 'scala',
    '.sh': 'bash',
}

SEVERITY_LEVELS = ("ERROR", "WARNING", "INFO")
CATEGORIES = (
    "security", "performance", "correctness", "style",
    "maintainability", "best-practices", "dependencies",
)


def _walk_files(root):
    # hidden directories (.git, .venv, ...) are not part of the scanned tree
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if not d.startswith('.')]
        for filename in filenames:
            yield filename


def count_files(root) -> int:
    return sum(1 for _ in _walk_files(root))


def detect_languages(root) -> list:
    """
    Detect the languages present in a source tree from file extensions.
    """
    languages = set()
    for filename in _walk_files(root):
        if filename.startswith('.'):
            continue
        language = LANGUAGE_EXTENSIONS.get(os.path.splitext(filename)[1].lower())
        if language:
            languages.add(language)
    return sorted(languages)


def calculate_findings_stats(results, files_scanned=0):
    """
    Count canonical findings by severity and category. Duplicates are counted
    separately and do not contribute to the per-severity/category totals.
    """
    severity_counts = Counter({level: 0 for level in SEVERITY_LEVELS})
    category_counts = Counter({category: 0 for category in CATEGORIES})
    duplicates = 0
    for result in results:
        if result.duplicate_of:
            duplicates += 1
            continue
        severity_counts[result.severity] += 1
        category_counts[result.category] += 1

    return {
        "total_findings": sum(severity_counts.values()),
        "duplicate_findings": duplicates,
        "files_scanned": files_scanned,
        "severity_count": dict(severity_counts),
        "categories": dict(category_counts),
    }
