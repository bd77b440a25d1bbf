"""Canonicalizes source URLs so equivalent links compare equal."""
import urllib.parse

YOUTUBE_WATCH_URL = 'https://www.youtube.com/watch?v={video_id}'


def canonicalize_url(raw_url: str) -> str:
    """
    Maps the different YouTube link shapes onto one watch URL.

    `watch?v=`, `/shorts/<id>`, `/live/<id>` and `youtu.be/<id>` links are
    rewritten; every other URL is only trimmed.

    Args:
        raw_url: The URL as entered by the user.

    Returns:
        The canonical URL string.
    """
    url = raw_url.strip()
    if not url:
        return url

    try:
        parsed = urllib.parse.urlsplit(url)
    except ValueError:
        return url
    if not parsed.scheme or not parsed.netloc:
        return url

    host = (parsed.hostname or '').lower()
    if 'youtube.com' in host:
        video_ids = urllib.parse.parse_qs(parsed.query).get('v')
        if video_ids and video_ids[0]:
            return YOUTUBE_WATCH_URL.format(video_id=video_ids[0])
        parts = [part for part in parsed.path.split('/') if part]
        if len(parts) >= 2 and parts[0] in ('shorts', 'live'):
            return YOUTUBE_WATCH_URL.format(video_id=parts[1])

    if host == 'youtu.be':
        video_id = next((part for part in parsed.path.split('/') if part), None)
        if video_id:
            return YOUTUBE_WATCH_URL.format(video_id=video_id)

    return url
