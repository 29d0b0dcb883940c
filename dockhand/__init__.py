"""
Dockhand Agent
==============

The daemon that runs next to a container runtime on every managed host.

What it does:
  1. Register the host with the fleet service and store the issued key
  2. Every few seconds, list containers (with full inspect detail) and images
  3. Optionally sample per-container CPU and memory from the host process table
  4. Upload each snapshot to the fleet service through a bounded queue
  5. Proxy the runtime's HTTP API, whether it listens on a Unix socket or TCP

Delivery model:
  - A single uploader thread sends units in the order they were queued
  - At most two units wait at once; collectors block behind a slow remote
  - A failed upload is logged and dropped, never retried

Requirements:
  pip install requests psutil docker flask

Usage:
  python -m dockhand.agent --register --url https://fleet.example.com
  python -m dockhand.agent --url https://fleet.example.com --docker /var/run/docker.sock
"""
