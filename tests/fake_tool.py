"""
Stand-in for yt-dlp used by the test suite.

Understands the three invocation modes the adapter uses (metadata, playlist,
download). Behaviour is chosen by the path of the source URL:

    /ok          writes the artifact and exits 0
    /fail        prints an error and exits 1
    /hang        writes a .part file and never finishes
    /late-partials  like /hang, but writes more partial files while
                 handling SIGTERM
    /spawn-helper   like /hang, with a long-lived helper child holding the
                 output pipes; its pid goes to the `pidfile` query parameter
    /no-output   exits 0 without writing anything
    /no-ffmpeg   leaves an unconverted .webm and reports missing ffmpeg
    /slow-meta   metadata mode never finishes; download works
    /playlist    lists the kinds given in the `items` query parameter
    /playlist-fail  playlist mode exits 1
"""

import json
import os
import signal
import subprocess
import sys
import time
from urllib.parse import parse_qs, urlparse


def _metadata(url: str, kind: str, query: dict) -> int:
    if kind == "slow-meta":
        time.sleep(60)
        return 0
    title = query.get("title", [f"Fake {kind} item"])[0]
    payload = json.dumps(
        {"title": title, "channel": "Fake Channel", "upload_date": "20240131",
         "duration": 215, "webpage_url": url}
    )
    # Mimic the tool's placeholder for missing fields.
    payload = payload[:-1] + ',"uploader":NA,"thumbnail":NA}'
    print(payload)
    return 0


def _playlist(kind: str, query: dict) -> int:
    if kind == "playlist-fail":
        print("ERROR: This playlist does not exist", file=sys.stderr)
        return 1
    items = [k for k in query.get("items", [""])[0].split(",") if k]
    for n, item_kind in enumerate(items, start=1):
        if item_kind == "id-only":
            print(f"vid{n}|NA")
        else:
            print(f"vid{n}|https://example.com/{item_kind}?n={n}")
    return 0


def _output_path(args: list[str], ext: str) -> str:
    template = args[args.index("-o") + 1]
    return template.replace("%(ext)s", ext).replace("%%", "%")


def _write(path: str) -> None:
    with open(path, "wb") as f:
        f.write(b"fake media payload " * 64)


def _write_late_partials(args: list[str]) -> None:
    def on_terminate(signum, frame):
        time.sleep(0.3)
        _write(_output_path(args, "f251.webm") + ".part")
        _write(_output_path(args, "webm") + ".ytdl")
        sys.exit(143)

    signal.signal(signal.SIGTERM, on_terminate)


def _spawn_helper(query: dict) -> None:
    helper = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    pid_file = query["pidfile"][0]
    with open(pid_file + ".tmp", "w") as f:
        f.write(str(helper.pid))
    os.replace(pid_file + ".tmp", pid_file)


def _download(args: list[str], kind: str, query: dict) -> int:
    ext = "mp3" if "-x" in args else "mp4"
    print("[download] Destination: fake", flush=True)

    if kind == "fail":
        print("ERROR: [youtube] fake: Video unavailable", file=sys.stderr)
        return 1
    if kind == "late-partials":
        _write_late_partials(args)
    if kind == "spawn-helper":
        _spawn_helper(query)
    if kind in ("hang", "late-partials", "spawn-helper"):
        _write(_output_path(args, "webm") + ".part")
        time.sleep(60)
        return 0
    if kind == "no-output":
        return 0
    if kind == "no-ffmpeg":
        _write(_output_path(args, "webm"))
        print(
            "ERROR: Postprocessing: ffprobe and ffmpeg not found. "
            "Please install or provide the path using --ffmpeg-location",
            file=sys.stderr,
        )
        return 1

    _write(_output_path(args, ext))
    return 0


def main(args: list[str]) -> int:
    if "--version" in args:
        print("2024.01.01-fake")
        return 0

    url = args[0]
    parsed = urlparse(url)
    kind = parsed.path.strip("/") or "ok"
    query = parse_qs(parsed.query)

    if "--flat-playlist" in args:
        return _playlist(kind, query)
    if "--no-download" in args:
        return _metadata(url, kind, query)
    return _download(args, kind, query)


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
