"""
Looks up media information for a URL using yt-dlp.
"""

import logging

from .constants import TITLE_LOOKUP_TIMEOUT
from .dependencies import DependencyManager
from .exceptions import URLExtractionError
from .urls import canonicalize_url


class URLInfoExtractor:
    """
    Provides methods to extract information from URLs using yt-dlp.

    This class uses fast, non-JSON-based commands for performance.
    """
    def __init__(self, dependencies: DependencyManager):
        """
        Initializes the URLInfoExtractor.

        Args:
            dependencies: Resolves the yt-dlp executable and runs commands.
        """
        self.dependencies = dependencies
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def parse_yt_dlp_error(stderr: str) -> str:
        """
        Parses stderr from yt-dlp to find a concise error message.

        Args:
            stderr: The standard error string from the yt-dlp process.

        Returns:
            A concise error message, or the last line of stderr as a fallback.
        """
        if not stderr.strip():
            return "yt-dlp returned an error with no output."

        for line in stderr.strip().splitlines():
            if line.lower().startswith('error:'):
                error_msg = line[6:].strip()
                return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg

        return stderr.strip().splitlines()[-1]

    async def get_single_video_title(self, url: str) -> str:
        """
        Quickly retrieves the title for a single video URL.

        Args:
            url: The URL of the single video.

        Returns:
            The title of the video.

        Raises:
            URLExtractionError: If the yt-dlp command fails or prints nothing.
        """
        command = [self.dependencies.resolve_executable('yt-dlp'), '--get-title', '--no-warnings',
                   '--no-playlist', url]
        result = await self.dependencies.supervisor.run_capture(command, timeout=TITLE_LOOKUP_TIMEOUT)
        if result.timed_out:
            raise URLExtractionError("Title lookup timed out.")
        if result.code != 0:
            raise URLExtractionError(self.parse_yt_dlp_error(result.stderr))
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            raise URLExtractionError("Title not found")
        return lines[0]

    async def lookup_title(self, url: str) -> str:
        """Returns the media title, or the canonical URL if it cannot be determined."""
        canonical = canonicalize_url(url)
        try:
            return await self.get_single_video_title(canonical)
        except URLExtractionError as e:
            self.logger.warning(f"Could not look up the title for {canonical}: {e}")
            return canonical
