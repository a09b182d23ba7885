"""Health check endpoint."""

from http.server import BaseHTTPRequestHandler
import json

SERVICE_NAME = "yardsale-ingest"


class handler(BaseHTTPRequestHandler):
    """Health check handler for Vercel serverless function."""

    def _write_status(self):
        self.send_response(200)
        self.send_header('Content-Type', 'application/json')
        self.end_headers()
        response = json.dumps({"status": "ok", "service": SERVICE_NAME})
        self.wfile.write(response.encode('utf-8'))

    def do_GET(self):
        """Handle GET request."""
        self._write_status()

    def do_HEAD(self):
        """Handle HEAD request (uptime probes)."""
        self.send_response(200)
        self.send_header('Content-Type', 'application/json')
        self.end_headers()

    def do_POST(self):
        """Handle POST request (same as GET for health check)."""
        self._write_status()
