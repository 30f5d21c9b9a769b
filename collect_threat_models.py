# /// script
# requires-python = ">=3.10"
# dependencies = [
#   "httpx~=0.28.0",
#   "tqdm",
#   "humanize",
#   "python-dotenv"
# ]
# ///

"""
Collects threat-model markdown files from GitHub code-search.
It's server-friendly, in that it makes synchronous requests with a slight sleep,
  waits out rate-limits instead of giving up, and skips files already on disk,
  so an interrupted run can simply be re-run and will continue from where it left off.

Usage:
  uv run ./collect_threat_models.py

Env:
  GITHUB_API_TOKEN (required) -- may be set in a `.env` file (see `.env.example`)
  LOG_LEVEL (optional) -- defaults to INFO

Outputs (all under `threat_model_findings/`, overwritten every run):
  threat_models.json, threat_models.csv, download_errors.json (only if failures), summary.txt,
  downloads/<owner_repo>/<path_with_underscores>
"""

import argparse
import csv
import json
import logging
import os
import re
import sys
import time
from collections import Counter
from collections.abc import Iterator
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path

import httpx
import humanize
from dotenv import load_dotenv
from tqdm import tqdm

## setup logging
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
## prevent httpx from logging
if log_level <= logging.INFO:
    for noisy in ('httpx', 'httpcore'):
        lg = logging.getLogger(noisy)
        lg.setLevel(logging.WARNING)
        lg.propagate = False


## constants
API_BASE = 'https://api.github.com'
SEARCH_CODE_URL = f'{API_BASE}/search/code'
RAW_BASE = 'https://raw.githubusercontent.com'
RAW_URL_TPL = f'{RAW_BASE}/{{repository}}/{{branch}}/{{path}}'
USER_AGENT = 'Threat-Model-Collector'

OUTPUT_DIR = Path('threat_model_findings')
DOWNLOADS_DIR = OUTPUT_DIR / 'downloads'
RESULTS_JSON_NAME = 'threat_models.json'
RESULTS_CSV_NAME = 'threat_models.csv'
ERRORS_JSON_NAME = 'download_errors.json'
SUMMARY_NAME = 'summary.txt'
CSV_HEADER = ['Repository', 'Owner', 'File Path', 'HTML URL', 'Size', 'Downloaded']

CANDIDATE_BRANCHES = ('HEAD', 'main', 'master', 'develop')
SENTINEL_REPOSITORY = 'mullvad/mullvadvpn-app'
TOP_REPOSITORIES = 20

PER_PAGE = 100
RAW_FETCH_TIMEOUT_S = 10.0
RATE_LIMIT_MARGIN_S = 5
RATE_LIMIT_MESSAGE_RE = re.compile(r'rate limit', re.IGNORECASE)  # secondary limits are a 403 with this message
QUERY_PAUSE_SECONDS = 1.0  # courtesy pause between search queries
DOWNLOAD_PAUSE_SECONDS = 0.1  # courtesy pause after each network download

## github search is case-insensitive, so only naming conventions need to vary
SEARCH_QUERIES: list[str] = [
    ## filename searches for different naming conventions
    'filename:threat-model.md',
    'filename:threat_model.md',
    'filename:threatmodel.md',
    ## in:path catches files in subdirectories
    'threat-model.md in:path',
    'threat_model.md in:path',
    'threatmodel.md in:path',
    ## mdx files
    'filename:threat-model.mdx',
    'filename:threat_model.mdx',
    'filename:threatmodel.mdx',
    ## `.markdown` extension
    'filename:threat-model.markdown',
    'filename:threat_model.markdown',
    ## path-based searches for files containing these patterns
    'threat-model in:path extension:md',
    'threat_model in:path extension:md',
    'threatmodel in:path extension:md',
]


class RateLimitError(Exception):
    """
    Raised by the search client when GitHub signals throttling.
    Carries the epoch-seconds at which the limit resets.
    """

    def __init__(self, reset_epoch: float, message: str = 'rate limit exceeded') -> None:
        super().__init__(message)
        self.reset_epoch: float = reset_epoch


@dataclass
class SearchResultRecord:
    """
    One discovered threat-model file, as returned by code-search.
    Identified by (repository, path); `downloaded` flips after a retrieval attempt.
    """

    repository: str
    owner: str
    path: str
    html_url: str | None = None
    download_url: str | None = None
    size: int | None = None
    sha: str | None = None
    downloaded: bool = False

    @classmethod
    def from_search_item(cls, item: dict[str, object]) -> 'SearchResultRecord':
        """
        Builds a record from one `items` entry of a code-search response.
        """
        repo: dict[str, object] = item.get('repository') or {}  # type: ignore[assignment]
        owner: dict[str, object] = repo.get('owner') or {}  # type: ignore[assignment]
        return cls(
            repository=str(repo.get('full_name') or ''),
            owner=str(owner.get('login') or ''),
            path=str(item.get('path') or ''),
            html_url=item.get('html_url'),  # type: ignore[arg-type]
            download_url=item.get('download_url'),  # type: ignore[arg-type]
            size=item.get('size'),  # type: ignore[arg-type]
            sha=item.get('sha'),  # type: ignore[arg-type]
        )

    @property
    def key(self) -> tuple[str, str]:
        return (self.repository, self.path)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass
class QueryStat:
    query: str
    total_count: int = 0
    retrieved: int = 0
    error: str | None = None


@dataclass
class SearchOutcome:
    """
    Everything the search phase accumulated, before deduplication.
    """

    records: list[SearchResultRecord] = field(default_factory=list)
    total_found: int = 0
    total_retrieved: int = 0
    query_stats: list[QueryStat] = field(default_factory=list)


@dataclass(frozen=True)
class ContentFound:
    content: bytes
    branch: str
    url: str


@dataclass(frozen=True)
class ContentNotFound:
    tried: tuple[str, ...]


FetchResult = ContentFound | ContentNotFound


@dataclass
class DownloadTally:
    successful: int = 0
    skipped: int = 0
    bytes_written: int = 0
    failed: list[SearchResultRecord] = field(default_factory=list)


class GitHubSearchClient:
    """
    Wraps the GitHub code-search endpoint.
    - Requests 100 results per page and follows `Link: rel="next"` until exhausted.
    - Yields pages one at a time, each with the reported `total_count`.
    - Converts throttling responses into `RateLimitError` with a reset time.
    - Raises `httpx.HTTPStatusError` for any other non-success status.
    """

    def __init__(self, client: httpx.Client, search_url: str = SEARCH_CODE_URL) -> None:
        self.client: httpx.Client = client
        self.search_url: str = search_url

    def iter_pages(self, query: str, *, per_page: int = PER_PAGE) -> Iterator[tuple[int, list[dict[str, object]]]]:
        """
        Yields (total_count, page-items) for each page of results.
        """
        url: str | None = self.search_url
        params: dict[str, str | int] | None = {'q': query, 'per_page': per_page}
        while url:
            log.debug(f'trying search url, ``{url}``; params, ``{params}``')
            resp: httpx.Response = self.client.get(
                url, params=params, headers={'Accept': 'application/vnd.github+json'}
            )
            self.check_rate_limit(resp)
            resp.raise_for_status()
            data: dict[str, object] = resp.json()
            page_items: list[dict[str, object]] = data.get('items') or []  # type: ignore[assignment]
            if not page_items:
                break
            yield int(data.get('total_count', 0) or 0), page_items  # type: ignore[arg-type]
            ## the `next` link already carries the query-string
            url = resp.links.get('next', {}).get('url')
            params = None

    @staticmethod
    def error_message(resp: httpx.Response) -> str:
        """
        Returns the `message` field of a GitHub error body, or '' when the body isn't JSON.
        """
        try:
            data: object = resp.json()
        except ValueError:
            return ''
        if isinstance(data, dict):
            return str(data.get('message') or '')
        return ''

    @staticmethod
    def check_rate_limit(resp: httpx.Response) -> None:
        """
        Raises RateLimitError when the response is a primary or secondary rate-limit.
        """
        if resp.status_code not in (403, 429):
            return
        remaining: str | None = resp.headers.get('x-ratelimit-remaining')
        retry_after: str | None = resp.headers.get('retry-after')
        if resp.status_code == 403 and remaining != '0' and retry_after is None:
            if not RATE_LIMIT_MESSAGE_RE.search(GitHubSearchClient.error_message(resp)):
                return
        reset_header: str | None = resp.headers.get('x-ratelimit-reset')
        if reset_header is not None and reset_header.isdigit():
            reset_epoch: float = float(reset_header)
        elif retry_after is not None and retry_after.isdigit():
            reset_epoch = _now_epoch() + int(retry_after)
        else:
            reset_epoch = _now_epoch()
        raise RateLimitError(reset_epoch, f'rate limit hit (status {resp.status_code})')


class SearchDriver:
    """
    Runs the fixed query list against the search client and accumulates records.
    - Sleeps until the reset time (plus a margin) on rate-limits, then re-issues the same query.
    - Logs and abandons a query on any other failure, keeping whatever pages it already returned.
    - Pauses briefly between completed queries.
    - Tracks reported totals and retrieved counts across all queries.
    """

    def __init__(
        self,
        search_client: GitHubSearchClient,
        *,
        rate_limit_margin_s: int = RATE_LIMIT_MARGIN_S,
        query_pause_s: float = QUERY_PAUSE_SECONDS,
    ) -> None:
        self.search_client: GitHubSearchClient = search_client
        self.rate_limit_margin_s: int = rate_limit_margin_s
        self.query_pause_s: float = query_pause_s

    def wait_seconds_for(self, reset_epoch: float) -> int:
        """
        Returns seconds to wait for a rate-limit reset; never negative.
        """
        return max(0, int(reset_epoch - _now_epoch()) + self.rate_limit_margin_s)

    def run(self, queries: list[str]) -> SearchOutcome:
        outcome = SearchOutcome()
        for index, query in enumerate(queries, start=1):
            stat: QueryStat = self.run_query(query, outcome)
            outcome.query_stats.append(stat)
            log.info(
                f'Search {index}/{len(queries)}: {query:<40} '
                f'Found: {stat.total_count:>4} Retrieved: {stat.retrieved:>3}'
            )
        return outcome

    def run_query(self, query: str, outcome: SearchOutcome) -> QueryStat:
        """
        Executes one query, retrying after rate-limits, and folds its results into `outcome`.
        Called by: run()
        """
        while True:
            stat = QueryStat(query=query)
            items: list[dict[str, object]] = []
            try:
                for page_number, (page_total, page_items) in enumerate(self.search_client.iter_pages(query), start=1):
                    if page_number == 1:
                        stat.total_count = page_total
                    items.extend(page_items)
            except RateLimitError as exc:
                ## pages from the interrupted attempt are dropped; the query restarts from page 1
                wait_s: int = self.wait_seconds_for(exc.reset_epoch)
                log.warning(f'Rate limit hit. Waiting {wait_s}s...')
                _sleep(wait_s)
                continue
            except Exception as exc:
                log.error(f'Error searching ``{query}`` (keeping {len(items)} already-fetched results): {exc}')
                stat.error = str(exc)
            break
        records: list[SearchResultRecord] = [SearchResultRecord.from_search_item(item) for item in items]
        stat.retrieved = len(records)
        outcome.records.extend(records)
        outcome.total_found += stat.total_count
        outcome.total_retrieved += len(records)
        if stat.error is None:
            _sleep(self.query_pause_s)
        return stat


class RawContentClient:
    """
    Fetches raw file bytes by trying a short list of branch names.
    - Builds raw.githubusercontent.com urls per candidate branch.
    - Returns the first 200 response as ContentFound.
    - Treats other statuses and network errors as a miss and moves on.
    - Returns ContentNotFound after all candidates; never raises.
    """

    def __init__(
        self,
        client: httpx.Client,
        token: str,
        *,
        branches: tuple[str, ...] = CANDIDATE_BRANCHES,
        timeout_s: float = RAW_FETCH_TIMEOUT_S,
    ) -> None:
        self.client: httpx.Client = client
        self.token: str = token
        self.branches: tuple[str, ...] = branches
        self.timeout_s: float = timeout_s

    def raw_url(self, repository: str, branch: str, path: str) -> str:
        return RAW_URL_TPL.format(repository=repository, branch=branch, path=path)

    def fetch(self, record: SearchResultRecord) -> FetchResult:
        headers: dict[str, str] = {'Authorization': f'token {self.token}', 'User-Agent': USER_AGENT}
        for branch in self.branches:
            url: str = self.raw_url(record.repository, branch, record.path)
            try:
                resp: httpx.Response = self.client.get(
                    url, headers=headers, timeout=self.timeout_s, follow_redirects=True
                )
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                log.debug(f'fetch failed for ``{url!r}``: {exc}')
                continue
            if resp.status_code == 200:
                return ContentFound(content=resp.content, branch=branch, url=url)
            log.debug(f'status {resp.status_code} for ``{url}``')
        return ContentNotFound(tried=self.branches)


class DownloadCache:
    """
    Maps (repository, path) to a flattened location under the downloads directory.
    - Replaces path separators with underscores in both parts.
    - Considers a file cached only when it exists and is non-empty.
    - Writes unconditionally, creating the repository directory as needed.
    """

    SEPARATORS: tuple[str, ...] = ('/', '\\')
    FILLER: str = '_'

    def __init__(self, root: Path) -> None:
        self.root: Path = root

    @classmethod
    def sanitize(cls, value: str) -> str:
        for sep in cls.SEPARATORS:
            value = value.replace(sep, cls.FILLER)
        return value

    def cache_path(self, repository: str, path: str) -> Path:
        return self.root / self.sanitize(repository) / self.sanitize(path)

    def is_cached(self, repository: str, path: str) -> bool:
        target: Path = self.cache_path(repository, path)
        return target.is_file() and target.stat().st_size > 0

    def store(self, content: bytes, repository: str, path: str) -> Path:
        target: Path = self.cache_path(repository, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return target


class DownloadProcessor:
    """
    Walks the deduplicated records and materializes each one on disk.
    - Marks already-cached records as downloaded without a network call.
    - Fetches missing ones via RawContentClient and stores them via DownloadCache.
    - Collects failures for the errors file; never aborts the batch.
    """

    def __init__(
        self, fetcher: RawContentClient, cache: DownloadCache, *, pause_s: float = DOWNLOAD_PAUSE_SECONDS
    ) -> None:
        self.fetcher = fetcher
        self.cache = cache
        self.pause_s = pause_s

    def process(self, records: list[SearchResultRecord]) -> DownloadTally:
        tally = DownloadTally()
        for record in tqdm(records, total=len(records), desc='Downloading files'):
            try:
                fetched: bool = self.process_record(record, tally)
            except OSError as exc:
                log.error(f'Error saving {record.repository}/{record.path}: {exc}')
                record.downloaded = False
                tally.failed.append(record)
                fetched = True
            if fetched:
                _sleep(self.pause_s)
        return tally

    def process_record(self, record: SearchResultRecord, tally: DownloadTally) -> bool:
        """
        Materializes one record; returns whether a network fetch was attempted.
        Called by: process()
        """
        if self.cache.is_cached(record.repository, record.path):
            log.debug(f'skipping (already downloaded): {record.repository}/{record.path}')
            record.downloaded = True
            tally.successful += 1
            tally.skipped += 1
            return False
        result: FetchResult = self.fetcher.fetch(record)
        if isinstance(result, ContentFound):
            self.cache.store(result.content, record.repository, record.path)
            record.downloaded = True
            tally.successful += 1
            tally.bytes_written += len(result.content)
        else:
            log.debug(f'not found on {", ".join(result.tried)}: {record.repository}/{record.path}')
            tally.failed.append(record)
        return True


class ResultsWriter:
    """
    Persists run results to fixed filenames (no timestamps), so every run overwrites the last.
    - Writes all records as JSON and as CSV.
    - Writes failed downloads as JSON, only when there are failures.
    - Writes a plain-text summary with top repositories and the sentinel-repository lookup.
    """

    def __init__(self, output_dir: Path) -> None:
        self.output_dir: Path = output_dir

    def save_results(self, records: list[SearchResultRecord], errors: list[SearchResultRecord]) -> None:
        json_path: Path = self.output_dir / RESULTS_JSON_NAME
        with json_path.open('w', encoding='utf-8') as fh:
            json.dump([r.to_dict() for r in records], fh, ensure_ascii=False, indent=2)
        log.info(f'Saved {len(records)} results to {json_path}')

        csv_path: Path = self.output_dir / RESULTS_CSV_NAME
        with csv_path.open('w', encoding='utf-8', newline='') as fh:
            writer = csv.writer(fh)
            writer.writerow(CSV_HEADER)
            for r in records:
                writer.writerow(
                    [r.repository, r.owner, r.path, r.html_url, r.size, 'Yes' if r.downloaded else 'No']
                )
        log.info(f'Saved CSV to {csv_path}')

        if errors:
            errors_path: Path = self.output_dir / ERRORS_JSON_NAME
            with errors_path.open('w', encoding='utf-8') as fh:
                json.dump([r.to_dict() for r in errors], fh, ensure_ascii=False, indent=2)
            log.info(f'Saved {len(errors)} download errors to {errors_path}')

    def write_summary(self, records: list[SearchResultRecord], tally: DownloadTally) -> Path:
        summary_path: Path = self.output_dir / SUMMARY_NAME
        with summary_path.open('w', encoding='utf-8') as fh:
            fh.write('\n'.join(build_summary_lines(records, tally)))
            fh.write('\n')
        return summary_path


def dedupe_records(records: list[SearchResultRecord]) -> tuple[list[SearchResultRecord], int]:
    """
    Keeps the first record for each (repository, path); returns (unique-records, removed-count).
    """
    seen: set[tuple[str, str]] = set()
    unique: list[SearchResultRecord] = []
    for record in records:
        if record.key in seen:
            continue
        seen.add(record.key)
        unique.append(record)
    return unique, len(records) - len(unique)


def top_repositories(records: list[SearchResultRecord], limit: int = TOP_REPOSITORIES) -> list[tuple[str, int]]:
    """
    Returns repositories ranked by number of records; ties keep first-seen order.
    """
    return Counter(r.repository for r in records).most_common(limit)


def build_summary_lines(records: list[SearchResultRecord], tally: DownloadTally) -> list[str]:
    """
    Builds the lines of `summary.txt`.
    Called by: ResultsWriter.write_summary()
    """
    lines: list[str] = [
        f'Threat Model Search Summary - {_now_iso()}',
        '=' * 60,
        f'Found: {len(records)} unique files',
        f'Downloaded: {tally.successful} files',
        f'Downloaded this run: {humanize.naturalsize(tally.bytes_written)}',
        '',
        f'Top {TOP_REPOSITORIES} repositories:',
    ]
    for repository, count in top_repositories(records):
        lines.append(f'  {repository}: {count} files')
    sentinel: SearchResultRecord | None = next(
        (r for r in records if r.repository == SENTINEL_REPOSITORY), None
    )
    lines.append('')
    lines.append(f'Mullvad file: {f"Found at {sentinel.path}" if sentinel else "Not found"}')
    return lines


class CLI:
    """
    Manages command-line parsing for the script entrypoint.
    - Takes no arguments; the query list and output directory are fixed.
    - Exists so `--help` describes the script and its environment.
    """

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        return argparse.ArgumentParser(
            description='Search GitHub for threat-model markdown files and download them.',
            epilog=f'Requires GITHUB_API_TOKEN (env or .env). Writes to {OUTPUT_DIR}/.',
        )

    @staticmethod
    def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
        return CLI.build_parser().parse_args(argv)


def load_token() -> str | None:
    """
    Loads `.env` (if present) and returns the GitHub token, or None when unset/empty.
    """
    load_dotenv()
    token: str = os.getenv('GITHUB_API_TOKEN', '').strip()
    return token or None


def _now_iso() -> str:
    """
    Returns an ISO-8601 local timestamp with timezone info.
    """
    return datetime.now().astimezone().isoformat()


def _now_epoch() -> float:
    return time.time()


def _sleep(backoff_s: float) -> None:
    """
    Sleeps for given seconds; centralizes sleep for easier tweaking.
    """
    time.sleep(backoff_s)


def main(argv: list[str] | None = None) -> int:
    """
    Searches GitHub for threat-model files, dedupes, downloads, and writes results + summary.

    Flow:
    - Checks for the API token; exits 1 with instructions when missing.
    - Creates the output and downloads directories.
    - Runs every search query, waiting out rate-limits.
    - Removes duplicate (repository, path) records.
    - Downloads each record not already on disk, trying several branch names.
    - Saves JSON, CSV, failed downloads, and the summary.

    Called by: dundermain
    """
    CLI.parse_args(argv)

    ## check token --------------------------------------------------
    token: str | None = load_token()
    if token is None:
        print('Error: GITHUB_API_TOKEN is not set.', file=sys.stderr)
        print('Please create a .env file with your GitHub token:', file=sys.stderr)
        print('  cp .env.example .env', file=sys.stderr)
        print('  # Then add your token to the .env file', file=sys.stderr)
        return 1

    ## create output directories ------------------------------------
    DOWNLOADS_DIR.mkdir(parents=True, exist_ok=True)
    log.info(f'Output directory: {OUTPUT_DIR}; total search queries: {len(SEARCH_QUERIES)}')

    ## create httpx client (headers, timeouts, limits) --------------
    headers: dict[str, str] = {'User-Agent': USER_AGENT, 'Authorization': f'token {token}'}
    timeout: httpx.Timeout = httpx.Timeout(connect=30.0, read=60.0, write=60.0, pool=30.0)
    limits: httpx.Limits = httpx.Limits(max_keepalive_connections=10, max_connections=10)
    with httpx.Client(headers=headers, timeout=timeout, limits=limits) as client:
        ## run searches ---------------------------------------------
        driver = SearchDriver(GitHubSearchClient(client))
        outcome: SearchOutcome = driver.run(SEARCH_QUERIES)

        ## remove duplicates ----------------------------------------
        records, duplicates_removed = dedupe_records(outcome.records)
        print('=' * 60)
        print('Search Results:')
        print(f'- Total found across all searches: {humanize.intcomma(outcome.total_found)}')
        print(f'- Total retrieved: {humanize.intcomma(outcome.total_retrieved)}')
        print(f'- After removing {duplicates_removed} duplicates: {len(records)} unique files')
        if not records:
            log.warning('No files found; nothing to download.')
            return 0

        ## download files -------------------------------------------
        processor = DownloadProcessor(RawContentClient(client, token), DownloadCache(DOWNLOADS_DIR))
        tally: DownloadTally = processor.process(records)

    print('Download Summary:')
    print(f'- Successfully downloaded: {tally.successful} ({tally.skipped} already on disk)')
    print(f'- Failed: {len(tally.failed)}')

    ## save results and summary -------------------------------------
    writer = ResultsWriter(OUTPUT_DIR)
    writer.save_results(records, tally.failed)
    summary_path: Path = writer.write_summary(records, tally)

    ## wrap up output -----------------------------------------------
    print(f'Files saved to: {DOWNLOADS_DIR}')
    print(f'Summary saved to: {summary_path}')
    print('Done!')
    return 0

    ## end def main()


if __name__ == '__main__':
    raise SystemExit(main())
