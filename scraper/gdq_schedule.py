"""Schedule scraper for the Games Done Quick marathon."""
import hashlib
import logging
import time
from typing import List, Optional

import requests
from bs4 import BeautifulSoup

from processor.errors import MalformedScheduleError, ScheduleFetchError
from processor.models import RawRun

logger = logging.getLogger(__name__)


class GdqScheduleScraper:
    """Scraper for the public GDQ schedule page."""

    BASE_URL = "https://gamesdonequick.com/schedule"

    def __init__(self, url: str = BASE_URL, timeout: int = 30, sleep=time.sleep):
        """
        Initialize the schedule scraper.

        Args:
            url: Schedule page URL
            timeout: HTTP request timeout in seconds (default: 30)
            sleep: Sleep function used between retries
        """
        self.url = url
        self.timeout = timeout
        self.sleep = sleep

    def fetch_schedule(self) -> List[RawRun]:
        """
        Fetch the current marathon schedule.

        Returns:
            List of RawRun objects in run order

        Raises:
            ScheduleFetchError: If the page could not be fetched
            MalformedScheduleError: If the page has no run table
        """
        logger.info(f"Fetching schedule from {self.url}")

        html_content = self._fetch_schedule_html()
        runs = self._parse_runs(html_content)

        logger.info(f"Successfully fetched {len(runs)} runs")
        return runs

    def _fetch_schedule_html(self) -> str:
        """
        Fetch schedule HTML with retry logic.

        Returns:
            HTML content as string

        Raises:
            ScheduleFetchError: If all retry attempts fail
        """
        max_retries = 3
        base_delay = 1  # seconds

        for attempt in range(max_retries):
            try:
                logger.info(f"Fetching schedule HTML (attempt {attempt + 1}/{max_retries})")
                response = requests.get(self.url, timeout=self.timeout)
                response.raise_for_status()
                return response.text

            except requests.RequestException as e:
                if attempt < max_retries - 1:
                    # Calculate exponential backoff delay
                    delay = base_delay * (2 ** attempt)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{max_retries}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    self.sleep(delay)
                else:
                    logger.error(
                        f"All {max_retries} retry attempts failed. Last error: {e}"
                    )
                    raise ScheduleFetchError(str(e)) from e

    def _parse_runs(self, html_content: str) -> List[RawRun]:
        """
        Parse runs from the schedule table.

        Each run is a primary row (start time, game, runners, setup time)
        followed by a "second-row" (estimate, category, host).

        Args:
            html_content: HTML content from the schedule page

        Returns:
            List of RawRun objects
        """
        soup = BeautifulSoup(html_content, 'html.parser')
        table = soup.find('table', id='runTable')
        if table is None:
            raise MalformedScheduleError("Schedule page has no run table")

        runs = []
        body = table.find('tbody') or table
        for row in body.find_all('tr', recursive=False):
            if 'second-row' in (row.get('class') or []):
                continue
            if 'day-split' in (row.get('class') or []):
                continue
            second_row = row.find_next_sibling('tr')
            if second_row is not None and 'second-row' not in (second_row.get('class') or []):
                second_row = None
            runs.append(self._parse_run(row, second_row))

        return runs

    def _parse_run(self, row, second_row) -> RawRun:
        """
        Parse a single run from its two table rows.

        Missing cells are returned as None so validation can reject them.

        Args:
            row: Primary <tr> of the run
            second_row: Following "second-row" <tr>, or None

        Returns:
            RawRun object
        """
        cells = row.find_all('td', recursive=False)
        start_cell = row.find('td', class_='start-time')

        name = self._cell_text(cells, 1)
        runners = self._cell_text(cells, 2) or ''

        estimate = None
        category = ''
        if second_row is not None:
            second_cells = second_row.find_all('td', recursive=False)
            estimate = self._cell_text(second_cells, 0)
            category = self._cell_text(second_cells, 1) or ''

        run_id = row.get('data-run-id')
        if not run_id and name:
            run_id = self.generate_run_id(name=name, category=category, runners=runners)

        return RawRun(
            run_id=run_id,
            name=name,
            start_time=start_cell.get_text(strip=True) if start_cell else None,
            estimate=estimate,
            category=category,
            runners=runners
        )

    def _cell_text(self, cells, index: int) -> Optional[str]:
        if index >= len(cells):
            return None
        text = cells[index].get_text(' ', strip=True)
        return text or None

    def generate_run_id(self, name: str, category: str, runners: str) -> str:
        """
        Generate a stable identifier for a run without a tracker id.

        Start time and position are left out since they change when the
        schedule shifts.

        Args:
            name: Game name
            category: Run category
            runners: Runner names

        Returns:
            Run ID (SHA256 hash)
        """
        composite = f"{name}|{category}|{runners}"
        return hashlib.sha256(composite.encode('utf-8')).hexdigest()
