# /// script
# requires-python = ">=3.10"
# dependencies = [
#   "tqdm",
#   "humanize"
# ]
# ///


"""
Analyzes markdown headings and filenames across downloaded threat-model files.

Prints a frequency report (most common headings overall and per level, filename patterns,
common filenames and filename words, and keyword-themed headings), then saves the full
counts to `heading_analysis_results.json` in the current directory.

Usage:
  uv run ./analyze_headings.py
  uv run ./analyze_headings.py ./threat_model_findings/downloads

Args:
  base_dir (optional) -- directory to scan recursively for `*.md` files;
    defaults to the collector's downloads directory.
"""

import argparse
import json
import logging
import os
import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path

import humanize
from tqdm import tqdm

## setup logging ----------------------------------------------------
log_level_name: str = os.getenv('LOG_LEVEL', 'INFO').upper()
log_level = getattr(
    logging, log_level_name, logging.INFO
)  # maps the string name to the corresponding logging level constant; defaults to INFO
logging.basicConfig(
    level=log_level,
    format='[%(asctime)s] %(levelname)s [%(module)s-%(funcName)s()::%(lineno)d] %(message)s',
    datefmt='%d/%b/%Y %H:%M:%S',
)
log = logging.getLogger(__name__)

## constants --------------------------------------------------------
DEFAULT_BASE_DIR: Path = Path('threat_model_findings') / 'downloads'
OUTPUT_FILE_NAME: str = 'heading_analysis_results.json'
MARKDOWN_SUFFIX: str = '.md'

HEADING_RE: re.Pattern[str] = re.compile(r'^(#+)\s+(.+)$')
NON_WORD_RE: re.Pattern[str] = re.compile(r'[^\w\s]|_')
WHITESPACE_RE: re.Pattern[str] = re.compile(r'\s+')
FILENAME_SPLIT_RE: re.Pattern[str] = re.compile(r'[-_\s.]+')
MEANINGFUL_TOKEN_RE: re.Pattern[str] = re.compile(r'threat|model|security|risk|attack|stride|readme')
EXTENDED_TOKEN_RE: re.Pattern[str] = re.compile(r'threat|model|security|risk|attack|stride|readme|doc')

SUBSTRING_PATTERNS: tuple[str, ...] = (
    'security',
    'stride',
    'threat',
    'model',
    'risk',
    'attack',
    'vulnerability',
    'asset',
    'readme',
    'doc',
    'index',
)
THEME_KEYWORDS: tuple[str, ...] = (
    'threat',
    'security',
    'attack',
    'risk',
    'model',
    'assumption',
    'scope',
    'overview',
    'introduction',
    'conclusion',
    'mitigation',
    'control',
    'vulnerability',
    'asset',
    'actor',
)

TOP_HEADINGS: int = 20
TOP_PER_LEVEL: int = 15
TOP_FILENAMES: int = 20
TOP_WORDS: int = 20
TOP_PER_THEME: int = 10


@dataclass
class HeadingRecord:
    level: int
    text: str
    normalized: str
    file: str = ''
    line_number: int = 0


def normalize_heading(text: str) -> str:
    """
    Folds a heading into its counting key: lower-cased, punctuation (and underscores) removed,
    whitespace collapsed.
    """
    lowered: str = text.lower()
    stripped: str = NON_WORD_RE.sub('', lowered)
    return WHITESPACE_RE.sub(' ', stripped).strip()


def extract_headings(content: str, file: str = '') -> list[HeadingRecord]:
    """
    Extracts `#`-style headings; the level is the number of leading `#` characters.
    Lines without whitespace after the `#` run are not headings.
    """
    headings: list[HeadingRecord] = []
    for index, raw_line in enumerate(content.split('\n'), start=1):
        match: re.Match[str] | None = HEADING_RE.match(raw_line.strip())
        if match is None:
            continue
        text: str = match.group(2).strip()
        headings.append(
            HeadingRecord(
                level=len(match.group(1)),
                text=text,
                normalized=normalize_heading(text),
                file=file,
                line_number=index,
            )
        )
    return headings


def filename_stem(filepath: str) -> str:
    """
    Returns the lower-cased base filename without its `.md` suffix.
    """
    name: str = Path(filepath).name
    if name.endswith(MARKDOWN_SUFFIX):
        name = name[: -len(MARKDOWN_SUFFIX)]
    return name.lower()


def match_filename_patterns(filename: str) -> dict[str, bool]:
    """
    Flags which known patterns appear in an (already lower-cased) filename stem.

    Example, for `docs_threat_model`:
      threat_model, threat, model, doc -> True
      security, stride, threat_modeling, etc -> False
    """
    patterns: dict[str, bool] = {
        'threat_model': 'threat' in filename and 'model' in filename,
        'threat_modeling': 'threat' in filename and 'modeling' in filename,
    }
    for pattern in SUBSTRING_PATTERNS:
        patterns[pattern] = pattern in filename
    return patterns


def cluster_filename(filename: str) -> str:
    """
    Reduces a flattened filename (like `docs_security_threat_model`) to its meaningful tail.

    This is a best-effort heuristic, not a bijection; similar names can land in different
    clusters depending on token order.
    - Splits on underscores.
    - If the last part is meaningful, keeps it, joined with the part before it when that one is too.
    - Otherwise joins every meaningful part, or falls back to the whole name.
    """
    parts: list[str] = filename.split('_')
    if len(parts) <= 1:
        return filename
    if MEANINGFUL_TOKEN_RE.search(parts[-1]):
        if EXTENDED_TOKEN_RE.search(parts[-2]):
            return '_'.join(parts[-2:])
        return parts[-1]
    meaningful_parts: list[str] = [part for part in parts if EXTENDED_TOKEN_RE.search(part)]
    return '_'.join(meaningful_parts) if meaningful_parts else filename


def filename_words(filename: str) -> list[str]:
    return [word for word in FILENAME_SPLIT_RE.split(filename) if word]


@dataclass
class HeadingStats:
    """
    Accumulates counts for one analysis run; counts only ever increase.
    """

    heading_counts: Counter[str] = field(default_factory=Counter)
    headings_by_level: dict[int, list[HeadingRecord]] = field(default_factory=dict)
    file_headings: dict[str, list[HeadingRecord]] = field(default_factory=dict)
    filename_patterns: Counter[str] = field(default_factory=Counter)
    filenames: list[str] = field(default_factory=list)
    files_processed: int = 0

    def add_filename(self, relative_path: str) -> None:
        self.filenames.append(relative_path)
        for pattern, matched in match_filename_patterns(filename_stem(relative_path)).items():
            if matched:
                self.filename_patterns[pattern] += 1

    def add_headings(self, relative_path: str, headings: list[HeadingRecord]) -> None:
        if not headings:
            return
        self.file_headings[relative_path] = headings
        self.files_processed += 1
        for heading in headings:
            self.headings_by_level.setdefault(heading.level, []).append(heading)
            self.heading_counts[heading.normalized] += 1

    def levels_found(self) -> list[int]:
        return sorted(self.headings_by_level)

    def level_counts(self, level: int) -> Counter[str]:
        return Counter(h.normalized for h in self.headings_by_level.get(level, []))

    def level_example(self, level: int, normalized: str) -> str:
        """
        Returns the first raw heading text seen at this level for a normalized key.
        """
        for heading in self.headings_by_level.get(level, []):
            if heading.normalized == normalized:
                return heading.text
        return normalized

    def clustered_filenames(self) -> Counter[str]:
        return Counter(cluster_filename(filename_stem(f)) for f in self.filenames)

    def word_counts(self) -> Counter[str]:
        counts: Counter[str] = Counter()
        for f in self.filenames:
            counts.update(filename_words(filename_stem(f)))
        return counts

    def theme_matches(self) -> dict[str, list[tuple[str, int]]]:
        """
        Maps each theme keyword to the normalized headings containing it, most common first.
        Keywords with no matching heading are left out.
        """
        themes: dict[str, list[tuple[str, int]]] = {}
        for keyword in THEME_KEYWORDS:
            matches: list[str] = [h for h in self.heading_counts if keyword in h]
            if matches:
                matches.sort(key=lambda h: -self.heading_counts[h])
                themes[keyword] = [(h, self.heading_counts[h]) for h in matches]
        return themes

    def to_dict(self) -> dict[str, object]:
        def heading_entry(h: HeadingRecord) -> dict[str, object]:
            return {'text': h.text, 'file': h.file, 'normalized': h.normalized}

        def file_entry(h: HeadingRecord) -> dict[str, object]:
            return {'level': h.level, 'text': h.text, 'line_number': h.line_number}

        return {
            'summary': {
                'files_processed': self.files_processed,
                'total_files_found': len(self.filenames),
                'total_headings': len(self.heading_counts),
                'levels_found': self.levels_found(),
            },
            'heading_counts': dict(self.heading_counts),
            'headings_by_level': {
                str(level): [heading_entry(h) for h in self.headings_by_level[level]] for level in self.levels_found()
            },
            'file_headings': {path: [file_entry(h) for h in hs] for path, hs in self.file_headings.items()},
            'filename_patterns': dict(self.filename_patterns),
            'filenames': self.filenames,
        }


class HeadingAnalyzer:
    """
    Walks a directory of markdown files and folds each one into a HeadingStats.
    - Finds `*.md` files recursively, in sorted order.
    - Records filename patterns for every file before reading it.
    - Logs and skips files that can't be read as UTF-8.
    """

    def __init__(self, base_dir: Path) -> None:
        self.base_dir: Path = base_dir

    def find_markdown_files(self) -> list[Path]:
        if not self.base_dir.is_dir():
            log.warning(f'base directory not found, ``{self.base_dir}``')
            return []
        return sorted(p for p in self.base_dir.rglob(f'*{MARKDOWN_SUFFIX}') if p.is_file())

    def analyze(self) -> HeadingStats:
        stats = HeadingStats()
        markdown_files: list[Path] = self.find_markdown_files()
        log.info(f'Found {humanize.intcomma(len(markdown_files))} markdown files in ``{self.base_dir}``')
        for file_path in tqdm(markdown_files, total=len(markdown_files), desc='Analyzing files'):
            self.process_file(file_path, stats)
        return stats

    def process_file(self, file_path: Path, stats: HeadingStats) -> None:
        """
        Called by: analyze()
        """
        relative_path: str = file_path.relative_to(self.base_dir).as_posix()
        stats.add_filename(relative_path)
        try:
            content: str = file_path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as exc:
            log.error(f'Error processing {relative_path}: {exc}')
            return
        stats.add_headings(relative_path, extract_headings(content, relative_path))


class ReportPrinter:
    """
    Prints the console report for a finished HeadingStats.
    """

    def __init__(self, stats: HeadingStats) -> None:
        self.stats: HeadingStats = stats

    def print_report(self) -> None:
        """
        Prints every report section.
        Called by: main()
        """
        print('\n' + '=' * 80)
        print('THREAT MODEL HEADING ANALYSIS REPORT')
        print('=' * 80)
        self.print_summary()
        self.print_levels()
        print('\n' + '=' * 80)
        print('FILENAME PATTERNS')
        print('=' * 80)
        self.print_filename_patterns()
        print('\n' + '=' * 80)
        print('COMMON HEADING PATTERNS')
        print('=' * 80)
        self.print_themes()

    def print_summary(self) -> None:
        s: HeadingStats = self.stats
        print('\nSUMMARY:')
        print(f'- Files processed: {s.files_processed}')
        print(f'- Total markdown files found: {len(s.filenames)}')
        print(f'- Total unique headings: {len(s.heading_counts)}')
        print(f'- Heading levels found: {", ".join(str(level) for level in s.levels_found())}')
        print('\nMOST COMMON HEADINGS:')
        for heading, count in s.heading_counts.most_common(TOP_HEADINGS):
            print(f'{count:>3}: {heading}')

    def print_levels(self) -> None:
        s: HeadingStats = self.stats
        for level in s.levels_found():
            print('\n' + '=' * 40)
            print(f'LEVEL {level} HEADINGS (H{level})')
            print('=' * 40)
            for normalized, count in s.level_counts(level).most_common(TOP_PER_LEVEL):
                print(f'{count:>3}: {s.level_example(level, normalized)}')
            print(f'\nTotal H{level} headings: {len(s.headings_by_level[level])}')

    def print_filename_patterns(self) -> None:
        s: HeadingStats = self.stats
        total: int = len(s.filenames)
        print('\nFILENAME PATTERN ANALYSIS:')
        print(f'Total files analyzed: {total}')
        for pattern, count in s.filename_patterns.most_common():
            percentage: float = round(count / total * 100, 1) if total else 0.0
            print(f'{count:>3} ({percentage:>5}%): {pattern}')
        print('\nMOST COMMON FILENAMES:')
        for filename, count in s.clustered_filenames().most_common(TOP_FILENAMES):
            print(f'{count:>3}: {filename}')
        print('\nCOMMON FILENAME COMPONENTS:')
        for word, count in s.word_counts().most_common(TOP_WORDS):
            print(f'{count:>3}: {word}')

    def print_themes(self) -> None:
        for keyword, matches in self.stats.theme_matches().items():
            print(f"\n'{keyword.upper()}' related headings ({len(matches)}):")
            for heading, count in matches[:TOP_PER_THEME]:
                print(f'  {count:>2}: {heading}')


def save_detailed_data(stats: HeadingStats, output_path: Path) -> None:
    """
    Writes the full counts to JSON, overwriting any earlier run.
    Called by: main()
    """
    with output_path.open('w', encoding='utf-8') as fh:
        json.dump(stats.to_dict(), fh, ensure_ascii=False, indent=2)
    print(f'\nDetailed results saved to: {output_path}')


def main(argv: list[str] | None = None) -> int:
    """
    Analyzes the corpus, prints the report, and saves the JSON dump.
    Called by: dundermain
    """
    parser = argparse.ArgumentParser(description='Analyze headings and filenames of downloaded threat-model files.')
    parser.add_argument(
        'base_dir',
        nargs='?',
        default=str(DEFAULT_BASE_DIR),
        help=f'Directory to scan for markdown files (default: {DEFAULT_BASE_DIR}).',
    )
    args = parser.parse_args(argv)
    base_dir: Path = Path(args.base_dir).expanduser()
    print(f'Analyzing threat model files in: {base_dir}')
    stats: HeadingStats = HeadingAnalyzer(base_dir).analyze()
    ReportPrinter(stats).print_report()
    save_detailed_data(stats, Path(OUTPUT_FILE_NAME))
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
