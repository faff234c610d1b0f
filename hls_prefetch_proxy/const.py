SUPPORTED_REQUEST_HEADERS = [
    "accept",
    "accept-encoding",
    "accept-language",
    "connection",
    "user-agent",
    "referer",
    "origin",
    "cookie",
    "authorization",
]

HLS_PLAYLIST_MEDIA_TYPE = "application/vnd.apple.mpegurl"
HLS_SEGMENT_MEDIA_TYPE = "video/mp2t"
