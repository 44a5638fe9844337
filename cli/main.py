#!/usr/bin/env python3
"""
vseg CLI - Command line interface for the segmentation service.
"""

import argparse
import mimetypes
import os
import sys
import time
from pathlib import Path

import httpx
from rich.console import Console
from rich.progress import (
    BarColumn,
    FileSizeColumn,
    Progress,
    TaskProgressColumn,
    TextColumn,
    TimeRemainingColumn,
    TotalFileSizeColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from api.errors import truncate_error
from config import ERROR_DETAIL_MAX_LENGTH, ERROR_SUMMARY_MAX_LENGTH, MAX_UPLOAD_SIZE, PORT

console = Console()

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("VSEG_API_TIMEOUT", "30"))

# Upload and download timeouts in seconds (default 1 hour)
UPLOAD_TIMEOUT = int(os.getenv("VSEG_UPLOAD_TIMEOUT", "3600"))
DOWNLOAD_TIMEOUT = int(os.getenv("VSEG_DOWNLOAD_TIMEOUT", "3600"))

# Seconds between status polls for `process --wait`
POLL_INTERVAL = float(os.getenv("VSEG_POLL_INTERVAL", "1.0"))

_default_server_url = f"http://localhost:{PORT}"
SERVER_URL = os.getenv("VSEG_SERVER_URL", _default_server_url).rstrip("/")
API_BASE = SERVER_URL + "/api"

TERMINAL_STATES = ("completed", "failed")


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


class ProgressFileWrapper:
    """Wrapper for file objects that reports upload progress."""

    def __init__(self, file, progress, task_id):
        self.file = file
        self.progress = progress
        self.task_id = task_id

    def read(self, size=-1):
        # Empty reads at EOF don't advance progress
        data = self.file.read(size)
        if data:
            self.progress.update(self.task_id, advance=len(data))
        return data

    def seek(self, *args, **kwargs):
        return self.file.seek(*args, **kwargs)

    def tell(self):
        return self.file.tell()


def safe_json_response(response, default_error="Request failed"):
    """
    Safely parse JSON response with proper error handling.

    Raises:
        CLIError: If response status is not successful or JSON parsing fails
    """
    if not response.is_success:
        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, httpx.ResponseNotRead):
            detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}")


def validate_file(file_path: Path) -> int:
    """
    Validate file exists, is readable and within the upload limit.

    Returns:
        File size in bytes

    Raises:
        CLIError: If the file cannot be uploaded
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")
    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")
    if not os.access(file_path, os.R_OK):
        raise CLIError(f"File is not readable: {file_path}")

    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")
    if file_size > MAX_UPLOAD_SIZE:
        max_size_mb = MAX_UPLOAD_SIZE / (1024 * 1024)
        raise CLIError(f"File too large ({file_size / (1024 * 1024):.1f} MB). Maximum upload size is {max_size_mb:.0f} MB")
    return file_size


def guess_video_mime_type(file_path: Path) -> str:
    """MIME type sent with an upload; the server only accepts video/*."""
    mime_type, _ = mimetypes.guess_type(file_path.name)
    if mime_type and mime_type.startswith("video/"):
        return mime_type
    return "video/mp4"


def fetch_video(client: httpx.Client, video_id: str) -> dict:
    return safe_json_response(client.get(f"{API_BASE}/videos/{video_id}"))


def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    from api.public import app
    from config import LOG_LEVEL

    uvicorn.run(app, host=args.host, port=args.port, log_level=LOG_LEVEL.lower())


def cmd_upload(args):
    """Upload a video file."""
    file_path = Path(args.file)
    file_size = validate_file(file_path)
    console.print(f"Uploading: {file_path.name}")

    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        FileSizeColumn(),
        TextColumn("/"),
        TotalFileSizeColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        console=console,
    ) as progress:
        task_id = progress.add_task("Uploading...", total=file_size)
        with open(file_path, "rb") as f:
            wrapped_file = ProgressFileWrapper(f, progress, task_id)
            files = {"video": (file_path.name, wrapped_file, guess_video_mime_type(file_path))}
            with httpx.Client(timeout=httpx.Timeout(UPLOAD_TIMEOUT)) as client:
                response = client.post(f"{API_BASE}/videos/upload", files=files)

    result = safe_json_response(response)
    console.print("[green]Success![/green] Video uploaded.")
    console.print(f"  ID: {result['video_id']}")


def cmd_process(args):
    """Start processing a video, optionally waiting for it to finish."""
    with httpx.Client(timeout=DEFAULT_API_TIMEOUT) as client:
        result = safe_json_response(client.post(f"{API_BASE}/videos/{args.video_id}/process"))
        console.print(result["message"])
        if not args.wait or result.get("segments"):
            return

        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
        ) as progress:
            task_id = progress.add_task("Segmenting...", total=100)
            while True:
                video = fetch_video(client, args.video_id)
                if video["processing_state"] in TERMINAL_STATES:
                    break
                progress.update(task_id, completed=video.get("progress") or 0)
                time.sleep(POLL_INTERVAL)
            if video["processing_state"] == "completed":
                progress.update(task_id, completed=100)

    if video["processing_state"] == "failed":
        raise CLIError(f"Processing failed: {video.get('last_error') or 'unknown error'}")
    console.print(f"[green]Done.[/green] {len(video['segments'])} segments created.")


def cmd_status(args):
    """Show a video's processing state."""
    with httpx.Client(timeout=DEFAULT_API_TIMEOUT) as client:
        video = fetch_video(client, args.video_id)

    console.print(f"ID:       {video['id']}")
    console.print(f"Name:     {video['original_name']}")
    console.print(f"Size:     {video['size']} bytes")
    console.print(f"State:    {video['processing_state']}")
    if video.get("progress") is not None:
        console.print(f"Progress: {video['progress']}%")
    if video.get("last_error"):
        console.print(f"Error:    [red]{video['last_error']}[/red]")
    console.print(f"Segments: {len(video['segments'])}")


def cmd_segments(args):
    """List the segments of a processed video."""
    with httpx.Client(timeout=DEFAULT_API_TIMEOUT) as client:
        result = safe_json_response(client.get(f"{API_BASE}/videos/{args.video_id}/segments"))

    table = Table(title=f"Segments of {args.video_id}")
    table.add_column("#", justify="right")
    table.add_column("ID")
    table.add_column("Start", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("URL")
    for segment in result["segments"]:
        table.add_row(
            str(segment["index"]),
            segment["id"],
            f"{segment['start_time']:.1f}s",
            f"{segment['duration']:.1f}s",
            segment["url"],
        )
    console.print(table)


def cmd_download(args):
    """Download one segment as segment_<index>.mp4."""
    output_dir = Path(args.output)
    if not output_dir.is_dir():
        raise CLIError(f"Output directory does not exist: {output_dir}")

    with httpx.Client(timeout=httpx.Timeout(DOWNLOAD_TIMEOUT)) as client:
        with client.stream("GET", f"{SERVER_URL}/download/segment/{args.segment_id}") as response:
            if not response.is_success:
                response.read()
                safe_json_response(response)
            file_name = response.headers.get("content-disposition", "").split("filename=")[-1].strip('"')
            target = output_dir / (file_name or f"{args.segment_id}.mp4")
            with open(target, "wb") as f:
                for chunk in response.iter_bytes():
                    f.write(chunk)

    console.print(f"Saved {target}")


def cmd_delete(args):
    """Delete a video and its files."""
    with httpx.Client(timeout=DEFAULT_API_TIMEOUT) as client:
        safe_json_response(client.delete(f"{API_BASE}/videos/{args.video_id}"))
    console.print(f"Video {args.video_id} deleted.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vseg", description="vseg CLI - Segment and stream videos")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.add_argument("--host", default=os.getenv("VSEG_HOST", "0.0.0.0"), help="Bind address")
    serve_parser.add_argument("--port", type=int, default=PORT, help=f"Port (default: {PORT})")
    serve_parser.set_defaults(func=cmd_serve)

    upload_parser = subparsers.add_parser("upload", help="Upload a video file")
    upload_parser.add_argument("file", help="Video file to upload")
    upload_parser.set_defaults(func=cmd_upload)

    process_parser = subparsers.add_parser("process", help="Split a video into segments")
    process_parser.add_argument("video_id", help="Video ID")
    process_parser.add_argument("-w", "--wait", action="store_true", help="Wait until processing finishes")
    process_parser.set_defaults(func=cmd_process)

    status_parser = subparsers.add_parser("status", help="Show a video's processing state")
    status_parser.add_argument("video_id", help="Video ID")
    status_parser.set_defaults(func=cmd_status)

    segments_parser = subparsers.add_parser("segments", help="List a video's segments")
    segments_parser.add_argument("video_id", help="Video ID")
    segments_parser.set_defaults(func=cmd_segments)

    download_parser = subparsers.add_parser("download", help="Download one segment")
    download_parser.add_argument("segment_id", help="Segment ID")
    download_parser.add_argument("-o", "--output", default=".", help="Output directory (default: current)")
    download_parser.set_defaults(func=cmd_download)

    delete_parser = subparsers.add_parser("delete", help="Delete a video")
    delete_parser.add_argument("video_id", help="Video ID")
    delete_parser.set_defaults(func=cmd_delete)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        args.func(args)
    except httpx.ConnectError:
        console.print(f"Error: Could not connect to the server at {SERVER_URL}")
        console.print("Make sure the server is running (vseg serve).")
        sys.exit(1)
    except httpx.TimeoutException:
        console.print(f"Error: Request to {SERVER_URL} timed out")
        sys.exit(1)
    except CLIError as e:
        console.print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
