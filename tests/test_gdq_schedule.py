"""Unit tests for GdqScheduleScraper."""
import pytest
import responses
from requests.exceptions import Timeout

from processor.errors import MalformedScheduleError, ScheduleFetchError
from scraper.gdq_schedule import GdqScheduleScraper

SCHEDULE_URL = "https://gamesdonequick.com/schedule"

SCHEDULE_HTML = """
<html>
    <body>
        <table id="runTable" class="table">
            <tbody>
                <tr class="day-split"><td colspan="4">Sunday, January 14th</td></tr>
                <tr data-run-id="6123">
                    <td class="start-time text-right">2024-01-14T16:30:00Z</td>
                    <td>Super Metroid</td>
                    <td>Alice, Bob</td>
                    <td class="visible-lg text-center"><i class="fa fa-clock-o"></i> 0:10:00</td>
                </tr>
                <tr class="second-row">
                    <td class="text-right"><i class="fa fa-clock-o" aria-hidden="true"></i> 0:45:00</td>
                    <td>Any% &mdash; SNES</td>
                    <td><i class="fa fa-microphone"></i> Host</td>
                </tr>
                <tr>
                    <td class="start-time text-right">2024-01-14T17:25:00Z</td>
                    <td>Celeste</td>
                    <td>Carol</td>
                    <td class="visible-lg text-center">0:05:00</td>
                </tr>
                <tr class="second-row">
                    <td class="text-right">1:05:00</td>
                    <td>Any%</td>
                    <td>Host</td>
                </tr>
            </tbody>
        </table>
    </body>
</html>
"""


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def scraper(sleeps):
    return GdqScheduleScraper(timeout=30, sleep=sleeps.append)


class TestGdqScheduleScraper:
    """Test cases for GdqScheduleScraper class."""

    @responses.activate
    def test_fetch_schedule_success(self, scraper):
        """Test successful schedule fetching and parsing."""
        responses.add(responses.GET, SCHEDULE_URL, body=SCHEDULE_HTML, status=200)

        runs = scraper.fetch_schedule()

        assert len(runs) == 2

        # Verify first run
        assert runs[0].run_id == "6123"
        assert runs[0].name == "Super Metroid"
        assert runs[0].start_time == "2024-01-14T16:30:00Z"
        assert runs[0].estimate == "0:45:00"
        assert runs[0].category.startswith("Any%")
        assert runs[0].runners == "Alice, Bob"

        # Verify second run gets a derived id
        assert runs[1].name == "Celeste"
        assert runs[1].estimate == "1:05:00"
        assert runs[1].run_id == scraper.generate_run_id("Celeste", "Any%", "Carol")

    @responses.activate
    def test_fetch_schedule_with_retry_success(self, scraper, sleeps):
        """Test retry logic succeeds after initial failures."""
        responses.add(responses.GET, SCHEDULE_URL, body="Server Error", status=500)
        responses.add(responses.GET, SCHEDULE_URL, body="Server Error", status=502)
        responses.add(responses.GET, SCHEDULE_URL, body=SCHEDULE_HTML, status=200)

        runs = scraper.fetch_schedule()

        assert len(runs) == 2
        assert len(responses.calls) == 3
        assert sleeps == [1, 2]

    @responses.activate
    def test_fetch_schedule_all_retries_fail(self, scraper):
        """Test that ScheduleFetchError is raised when all retries fail."""
        for _ in range(3):
            responses.add(responses.GET, SCHEDULE_URL, body="Server Error", status=500)

        with pytest.raises(ScheduleFetchError):
            scraper.fetch_schedule()

        assert len(responses.calls) == 3

    @responses.activate
    def test_fetch_schedule_timeout(self, scraper):
        """Test that timeouts are retried like other request errors."""
        for _ in range(3):
            responses.add(responses.GET, SCHEDULE_URL, body=Timeout("timed out"))

        with pytest.raises(ScheduleFetchError):
            scraper.fetch_schedule()

    @responses.activate
    def test_fetch_schedule_without_run_table(self, scraper):
        """Test that a page without the run table is malformed."""
        responses.add(responses.GET, SCHEDULE_URL, body="<html><body>Maintenance</body></html>", status=200)

        with pytest.raises(MalformedScheduleError):
            scraper.fetch_schedule()

    @responses.activate
    def test_fetch_schedule_missing_second_row(self, scraper):
        """Test that a run without its detail row has no estimate."""
        html = """
        <table id="runTable"><tbody>
            <tr data-run-id="1">
                <td class="start-time">2024-01-14T16:30:00Z</td>
                <td>Lonely Game</td>
                <td>Dave</td>
            </tr>
        </tbody></table>
        """
        responses.add(responses.GET, SCHEDULE_URL, body=html, status=200)

        runs = scraper.fetch_schedule()

        assert len(runs) == 1
        assert runs[0].estimate is None

    @responses.activate
    def test_fetch_schedule_custom_url(self, sleeps):
        url = "https://example.com/schedule/42"
        responses.add(responses.GET, url, body=SCHEDULE_HTML, status=200)

        runs = GdqScheduleScraper(url=url, sleep=sleeps.append).fetch_schedule()

        assert len(runs) == 2

    def test_generate_run_id_consistency(self, scraper):
        """Test that run id generation is consistent for same inputs."""
        first = scraper.generate_run_id(name="Celeste", category="Any%", runners="Carol")
        second = scraper.generate_run_id(name="Celeste", category="Any%", runners="Carol")

        assert first == second
        assert len(first) == 64

    def test_generate_run_id_uniqueness(self, scraper):
        ids = {
            scraper.generate_run_id("Celeste", "Any%", "Carol"),
            scraper.generate_run_id("Celeste", "100%", "Carol"),
            scraper.generate_run_id("Celeste", "Any%", "Erin"),
        }

        assert len(ids) == 3
