"""Remote release index constants."""

GITHUB_API_BASE = "https://api.github.com"
GITHUB_OWNER = "astral-sh"
GITHUB_REPO = "python-build-standalone"
GITHUB_REPO_SLUG = f"{GITHUB_OWNER}/{GITHUB_REPO}"
RELEASES_URL = f"{GITHUB_API_BASE}/repos/{GITHUB_REPO_SLUG}/releases"

RELEASES_PER_PAGE = 100
DOWNLOAD_CHUNK_SIZE = 8192
DOWNLOAD_TIMEOUT = 30 * 60
API_TIMEOUT = 30
CONNECTIVITY_TIMEOUT = 10

USER_AGENT = "mcp-python-runtime"
API_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "application/vnd.github.v3+json",
}

RELEASES_CACHE_KEY = "python_releases"
VERSIONS_CACHE_KEY = "python_versions_{tag}"
