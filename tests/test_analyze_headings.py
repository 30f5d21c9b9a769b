import io
import json
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import patch

import analyze_headings
from analyze_headings import (
    HeadingAnalyzer,
    HeadingStats,
    cluster_filename,
    extract_headings,
    filename_stem,
    filename_words,
    match_filename_patterns,
    normalize_heading,
)


def write_corpus(root: Path, files: dict[str, bytes]) -> None:
    for relative, content in files.items():
        target: Path = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)


THREE_FILE_CORPUS: dict[str, bytes] = {
    'owner_one/docs_threat_model.md': b'# Threat Model\n\nIntro text.\n\n## Mitigation\n',
    'owner_two/threat-model.md': b'# Threat Model\n## Mitigation\n',
    'owner_three/SECURITY.md': b'No headings in here.\n',
}


class TestExtractHeadings(unittest.TestCase):
    """
    Tests extract_headings().
    """

    def test_level_text_and_normalized(self) -> None:
        """
        Checks the level comes from the `#` run and the text keeps its punctuation.
        """
        computed = extract_headings('## Hello, World!')
        self.assertEqual(len(computed), 1)
        self.assertEqual(computed[0].level, 2)
        self.assertEqual(computed[0].text, 'Hello, World!')
        self.assertEqual(computed[0].normalized, 'hello world')

    def test_non_headings_are_ignored(self) -> None:
        self.assertEqual(extract_headings('Not a heading'), [])
        self.assertEqual(extract_headings('####NoSpace'), [])
        self.assertEqual(extract_headings('#'), [])
        self.assertEqual(extract_headings('Title\n====='), [])

    def test_line_numbers_and_surrounding_whitespace(self) -> None:
        content: str = 'preamble\n   ### Assets   \n\n####### Deep\n'
        computed = extract_headings(content, 'a/b.md')
        self.assertEqual([(h.level, h.text, h.line_number) for h in computed], [(3, 'Assets', 2), (7, 'Deep', 4)])
        self.assertEqual(computed[0].file, 'a/b.md')

    def test_only_newlines_split_lines(self) -> None:
        """
        Checks a form feed stays inside its line, so numbering follows `\\n` only.
        """
        computed = extract_headings('intro\x0c# Not A Heading\n## Real')
        self.assertEqual([(h.level, h.text, h.line_number) for h in computed], [(2, 'Real', 2)])


class TestNormalizeHeading(unittest.TestCase):
    """
    Tests normalize_heading().
    """

    def test_variants_collapse_to_one_key(self) -> None:
        self.assertEqual(normalize_heading('  Threat   Model!!  '), 'threat model')
        self.assertEqual(normalize_heading('threat model'), 'threat model')

    def test_idempotent(self) -> None:
        for text in ('Hello, World!', '  Threat   Model!!  ', 'STRIDE: Spoofing / Tampering', '1.2 Scope_and_Goals'):
            once: str = normalize_heading(text)
            self.assertEqual(normalize_heading(once), once)

    def test_underscores_and_punctuation_removed(self) -> None:
        self.assertEqual(normalize_heading('Threat_Model (v2.0)'), 'threatmodel v20')


class TestFilenameHelpers(unittest.TestCase):
    """
    Tests the filename pattern, clustering, and word helpers.
    """

    def test_filename_stem(self) -> None:
        self.assertEqual(filename_stem('owner_repo/Docs_Threat_Model.md'), 'docs_threat_model')
        self.assertEqual(filename_stem('threat.model.md'), 'threat.model')

    def test_patterns_for_docs_threat_model(self) -> None:
        computed: dict[str, bool] = match_filename_patterns('docs_threat_model')
        for key in ('threat_model', 'threat', 'model', 'doc'):
            self.assertTrue(computed[key], key)
        for key in ('security', 'stride', 'threat_modeling', 'readme'):
            self.assertFalse(computed[key], key)

    def test_threat_modeling_pattern(self) -> None:
        computed: dict[str, bool] = match_filename_patterns('threat-modeling')
        self.assertTrue(computed['threat_modeling'])
        self.assertTrue(computed['threat_model'])

    def test_cluster_filename(self) -> None:
        """
        Checks each branch of the clustering heuristic.
        """
        expected: dict[str, str] = {
            'docs_threat_model': 'threat_model',
            'docs_readme': 'docs_readme',
            'api_security': 'security',
            'project_threat_model_v2': 'threat_model',
            'notes_final': 'notes_final',
            'threat-model': 'threat-model',
        }
        computed: dict[str, str] = {name: cluster_filename(name) for name in expected}
        self.assertEqual(computed, expected)

    def test_filename_words(self) -> None:
        self.assertEqual(filename_words('threat-model.v2__final draft'), ['threat', 'model', 'v2', 'final', 'draft'])
        self.assertEqual(filename_words('-threat-'), ['threat'])


class TestHeadingStats(unittest.TestCase):
    """
    Tests the accumulator.
    """

    def test_level_example_is_first_seen_raw_text(self) -> None:
        stats = HeadingStats()
        stats.add_headings('a.md', extract_headings('## Threat Model!\n## threat model'))
        self.assertEqual(stats.level_counts(2), {'threat model': 2})
        self.assertEqual(stats.level_example(2, 'threat model'), 'Threat Model!')

    def test_file_without_headings_is_not_processed(self) -> None:
        stats = HeadingStats()
        stats.add_headings('a.md', [])
        self.assertEqual(stats.files_processed, 0)
        self.assertEqual(stats.file_headings, {})

    def test_theme_matches_sorted_by_count(self) -> None:
        stats = HeadingStats()
        stats.add_headings('a.md', extract_headings('# Risk\n# Risk Rating\n# Risk Rating\n# Scope'))
        themes = stats.theme_matches()
        self.assertEqual(themes['risk'], [('risk rating', 2), ('risk', 1)])
        self.assertEqual(themes['scope'], [('scope', 1)])
        self.assertNotIn('actor', themes)


class TestHeadingAnalyzer(unittest.TestCase):
    """
    Tests the directory walk end to end.
    """

    def test_three_file_corpus(self) -> None:
        """
        Checks two files with the same headings merge their counts, and the heading-less file
        counts toward files found but not files processed.
        """
        with tempfile.TemporaryDirectory() as tmp:
            write_corpus(Path(tmp), THREE_FILE_CORPUS)
            stats: HeadingStats = HeadingAnalyzer(Path(tmp)).analyze()
        self.assertEqual(dict(stats.heading_counts), {'threat model': 2, 'mitigation': 2})
        summary: dict[str, object] = stats.to_dict()['summary']  # type: ignore[assignment]
        self.assertEqual(summary['files_processed'], 2)
        self.assertEqual(summary['total_files_found'], 3)
        self.assertEqual(summary['levels_found'], [1, 2])
        self.assertEqual(stats.filename_patterns['security'], 1)
        self.assertEqual(stats.filenames[0], 'owner_one/docs_threat_model.md')

    def test_unreadable_file_still_counts_toward_filenames(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            write_corpus(Path(tmp), {'r/threat_model.md': b'# Bad \xff\xfe bytes\n', 'r/ok.md': b'# Scope\n'})
            with self.assertLogs('analyze_headings', level='ERROR') as logs:
                stats: HeadingStats = HeadingAnalyzer(Path(tmp)).analyze()
        self.assertEqual(stats.files_processed, 1)
        self.assertEqual(len(stats.filenames), 2)
        self.assertEqual(stats.filename_patterns['threat_model'], 1)
        self.assertIn('r/threat_model.md', logs.output[0])

    def test_missing_directory_yields_empty_stats(self) -> None:
        stats: HeadingStats = HeadingAnalyzer(Path('/nonexistent/threat/models')).analyze()
        self.assertEqual(stats.filenames, [])
        self.assertEqual(stats.files_processed, 0)


class TestMain(unittest.TestCase):
    """
    Tests the report output and JSON dump.
    """

    def test_main_prints_report_and_writes_json(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            corpus_dir: Path = Path(tmp) / 'downloads'
            write_corpus(corpus_dir, THREE_FILE_CORPUS)
            output_path: Path = Path(tmp) / 'heading_analysis_results.json'
            buffer = io.StringIO()
            with patch('analyze_headings.OUTPUT_FILE_NAME', str(output_path)), redirect_stdout(buffer):
                computed: int = analyze_headings.main([str(corpus_dir)])
            with output_path.open(encoding='utf-8') as fh:
                data: dict[str, object] = json.load(fh)
        report: str = buffer.getvalue()
        self.assertEqual(computed, 0)
        self.assertIn('THREAT MODEL HEADING ANALYSIS REPORT', report)
        self.assertIn('  2: threat model', report)
        self.assertIn('LEVEL 2 HEADINGS (H2)', report)
        self.assertIn("'MITIGATION' related headings (1):", report)
        self.assertIn('  2 ( 66.7%): threat\n', report)
        self.assertIn('  1 ( 33.3%): security\n', report)
        self.assertEqual(data['heading_counts'], {'threat model': 2, 'mitigation': 2})
        self.assertEqual(sorted(data['headings_by_level']), ['1', '2'])  # type: ignore[arg-type]
        self.assertEqual(
            data['file_headings']['owner_two/threat-model.md'],  # type: ignore[index]
            [
                {'level': 1, 'text': 'Threat Model', 'line_number': 1},
                {'level': 2, 'text': 'Mitigation', 'line_number': 2},
            ],
        )
        self.assertEqual(len(data['filenames']), 3)  # type: ignore[arg-type]


if __name__ == '__main__':
    unittest.main()
