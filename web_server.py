#!/usr/bin/env python3
"""
GeoPulse Web Server - tap-to-report safety map, live dashboard and marker API
"""
import logging
import signal
import sys
import time
from typing import Dict, List, Optional, Tuple

from flask import Flask, jsonify, render_template_string, request
from flask_cors import CORS

from aggregation import InvalidTimestamp, summarize, tag_sources, viewer_now
from config import AppConfig, ConfigError, load_config
from heatmap import heat_layer
from hexbin import hex_features, marker_points
from marker_store import (
    MarkerNotFound,
    MarkerStore,
    StoreError,
    ValidationError,
    create_store,
    validate_marker_update,
    validate_new_marker,
)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

CORS_METHODS = ["GET", "OPTIONS", "PATCH", "DELETE", "POST", "PUT"]
CORS_HEADERS = [
    "X-CSRF-Token", "X-Requested-With", "Accept", "Accept-Version", "Content-Length",
    "Content-MD5", "Content-Type", "Date", "X-Api-Version",
]


def error_response(message: str, status: int):
    return jsonify({"status": "error", "message": message}), status


def parse_version(raw: Optional[str]) -> Optional[int]:
    """Query-string campaign version; empty means all campaigns."""
    if raw is None or str(raw).strip() == "":
        return None
    return int(str(raw).strip())


def parse_compare(raw: Optional[str]) -> Optional[Tuple[int, int]]:
    if not raw:
        return None
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    if len(parts) != 2:
        raise ValueError("compare needs two versions, e.g. compare=1,2")
    return int(parts[0]), int(parts[1])


def create_app(config: Optional[AppConfig] = None, store: Optional[MarkerStore] = None) -> Flask:
    """Build the Flask app around one marker store.

    Store credentials are checked here, once. If they are missing the app
    still starts (so the problem is visible to API callers) but every
    store-backed endpoint answers 500 with the configuration message.
    """
    config = config or load_config()
    config_error: Optional[str] = None
    if store is None:
        try:
            store = create_store(config.store)
        except ConfigError as e:
            config_error = str(e)
            logger.error(f"Marker store unavailable: {config_error}")

    app = Flask(__name__)
    CORS(app, resources={r"/api/*": {"origins": "*"}}, methods=CORS_METHODS, allow_headers=CORS_HEADERS,
         supports_credentials=True)
    app.config["MARKER_STORE"] = store
    app.config["GEOPULSE"] = config

    def get_store() -> MarkerStore:
        if store is None:
            raise ConfigError(config_error or "Server configuration error")
        return store

    @app.errorhandler(ConfigError)
    def handle_config_error(e):
        return error_response(str(e), 500)

    @app.errorhandler(405)
    def handle_method_not_allowed(e):
        return error_response("Method not allowed", 405)

    def dashboard_markers() -> Tuple[List[Dict], bool]:
        """Markers for the dashboard endpoints: one version, or two tagged A/B."""
        compare = parse_compare(request.args.get("compare"))
        s = get_store()
        if compare:
            return tag_sources(s.list_markers(compare[0]), s.list_markers(compare[1])), True
        return s.list_markers(parse_version(request.args.get("version"))), False

    def filtered_view() -> Dict:
        tz_offset = request.args.get("tz_offset")
        now = viewer_now(int(tz_offset) if tz_offset not in (None, "") else None)
        markers, compare = dashboard_markers()
        return summarize(
            markers,
            time_range=request.args.get("range", "all"),
            sentiment=request.args.get("sentiment", "all"),
            source=request.args.get("source") if compare else None,
            compare=compare,
            now=now,
        )

    @app.errorhandler(InvalidTimestamp)
    def handle_bad_record(e):
        logger.error(f"Stored marker data is unreadable: {e}")
        return error_response("Internal server error", 500)

    @app.route('/')
    def map_page():
        """Tap-to-report map"""
        return render_template_string(MAP_TEMPLATE)

    @app.route('/stats')
    def stats_page():
        """Live dashboard"""
        return render_template_string(STATS_TEMPLATE)

    @app.route('/api/markers', methods=['GET'])
    def list_markers():
        """All live markers, newest first"""
        try:
            version = parse_version(request.args.get("version"))
        except ValueError:
            return error_response("Invalid version", 400)

        s = get_store()
        try:
            data = s.list_markers(version)
        except StoreError as e:
            logger.error(f"Error fetching markers: {e}")
            return error_response("Internal server error", 500)
        return jsonify({"status": "ok", "data": data})

    @app.route('/api/save-marker', methods=['POST'])
    def save_marker():
        """Create a marker, or update sentiment/comment of an existing one"""
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return error_response("Invalid JSON body", 400)

        marker_id = data.get("id")
        try:
            if marker_id:
                changes = validate_marker_update(data)
            else:
                row = validate_new_marker(data)
        except ValidationError as e:
            return error_response(str(e), 400)

        s = get_store()
        try:
            if marker_id:
                record = s.update_marker(str(marker_id), changes)
                logger.info(f"Updated marker {marker_id}")
            else:
                record = s.create_marker(row)
                logger.info(f"Saved {record['sentiment']} marker {record['id']} (version {record.get('version')})")
        except MarkerNotFound:
            return error_response("Marker not found", 404)
        except StoreError as e:
            logger.error(f"Store error saving marker: {e}")
            return error_response("Internal server error", 500)
        return jsonify({"status": "ok", "data": record})

    @app.route('/api/delete-marker', methods=['POST', 'DELETE'])
    def delete_marker():
        """Soft delete: stamp deleted_at"""
        data = request.get_json(silent=True) or {}
        marker_id = data.get("id") if isinstance(data, dict) else None
        if not marker_id:
            return error_response("Missing ID", 400)

        s = get_store()
        try:
            s.soft_delete_marker(str(marker_id))
        except StoreError as e:
            logger.error(f"Store error deleting marker {marker_id}: {e}")
            return error_response("Internal server error", 500)
        logger.info(f"Soft-deleted marker {marker_id}")
        return jsonify({"status": "ok", "message": "Marker deleted"})

    @app.route('/api/dashboard', methods=['GET'])
    def dashboard_view():
        """Filtered markers + KPIs for the stats page"""
        try:
            view = filtered_view()
        except ValueError as e:
            return error_response(str(e), 400)
        except StoreError as e:
            logger.error(f"Error building dashboard view: {e}")
            return error_response("Internal server error", 500)
        return jsonify({"status": "ok", "data": view})

    @app.route('/api/hexbins', methods=['GET'])
    def hexbins():
        """H3 grid layer as GeoJSON"""
        try:
            view = filtered_view()
            zoom = request.args.get("zoom")
            resolution = request.args.get("resolution")
            collection = hex_features(
                marker_points(view["markers"]),
                resolution=int(resolution) if resolution else None,
                zoom=float(zoom) if zoom else None,
            )
        except ValueError as e:
            return error_response(str(e), 400)
        except StoreError as e:
            logger.error(f"Error building hexbins: {e}")
            return error_response("Internal server error", 500)
        return jsonify(collection)

    @app.route('/api/heatmap', methods=['GET'])
    def heatmap():
        """Weighted points + leaflet.heat options"""
        try:
            view = filtered_view()
        except ValueError as e:
            return error_response(str(e), 400)
        except StoreError as e:
            logger.error(f"Error building heatmap: {e}")
            return error_response("Internal server error", 500)
        return jsonify({"status": "ok", "data": heat_layer(view["markers"])})

    @app.route('/api/health')
    def health():
        """Health check"""
        return jsonify({
            "status": "healthy" if store is not None else "misconfigured",
            "timestamp": time.time(),
        })

    return app


MAP_TEMPLATE = """
<!doctype html>
<html lang="en">
<head>
  <meta charset="UTF-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1.0" />
  <title>Community Safety Map</title>
  <link rel="stylesheet" href="https://unpkg.com/leaflet@1.9.4/dist/leaflet.css" />
  <style>
    :root {
      --bg: #f5f7fb;
      --panel: #ffffff;
      --text: #111827;
      --muted: #6b7280;
      --border: #e5e7eb;
      --safe: #10b981;
      --unsafe: #f43f5e;
      --accent: #3b82f6;
      --shadow: 0 1px 2px rgba(0,0,0,.06), 0 10px 24px rgba(0,0,0,.08);
      --radius: 14px;
    }
    :root[data-theme="dark"] {
      --bg: #0b1020;
      --panel: #0f172a;
      --text: #e5e7eb;
      --muted: #94a3b8;
      --border: rgba(148,163,184,.22);
      --shadow: 0 1px 2px rgba(0,0,0,.35), 0 10px 24px rgba(0,0,0,.35);
    }
    * { box-sizing: border-box; }
    html, body { height: 100%; margin: 0; }
    body { font-family: ui-sans-serif, system-ui, -apple-system, "Segoe UI", Roboto, Helvetica, Arial, sans-serif; background: var(--bg); color: var(--text); }
    #map { position: absolute; inset: 0; z-index: 0; }
    header { position: absolute; top: 14px; left: 14px; right: 14px; z-index: 400; display: flex; justify-content: space-between; pointer-events: none; }
    .card { pointer-events: auto; background: var(--panel); border: 1px solid var(--border); border-radius: var(--radius); box-shadow: var(--shadow); padding: 12px 16px; }
    h1 { margin: 0; font-size: 17px; }
    .muted { color: var(--muted); font-size: 12px; }
    .sheet { position: absolute; left: 50%; bottom: 16px; transform: translateX(-50%); width: min(440px, calc(100vw - 32px)); z-index: 500; display: none; }
    .sheet.open { display: block; }
    .choices { display: grid; grid-template-columns: 1fr 1fr; gap: 12px; margin: 12px 0; }
    .choice { height: 72px; border-radius: 12px; border: 2px solid var(--border); background: transparent; color: var(--text); font-weight: 700; font-size: 16px; cursor: pointer; }
    .choice.safe.active { border-color: var(--safe); background: rgba(16,185,129,.15); }
    .choice.unsafe.active { border-color: var(--unsafe); background: rgba(244,63,94,.15); }
    textarea { width: 100%; min-height: 80px; resize: none; border-radius: 12px; border: 1px solid var(--border); padding: 10px; background: transparent; color: var(--text); font: inherit; }
    .row { display: flex; gap: 10px; margin-top: 12px; }
    button.primary { flex: 1; height: 44px; border: 0; border-radius: 12px; background: var(--accent); color: white; font-weight: 700; cursor: pointer; }
    button.primary:disabled { opacity: .5; cursor: default; }
    button.ghost { flex: 1; height: 44px; border: 1px solid var(--border); border-radius: 12px; background: transparent; color: var(--text); cursor: pointer; }
    button.danger { flex: 1; height: 44px; border: 0; border-radius: 12px; background: var(--unsafe); color: white; cursor: pointer; }
    .counter { text-align: right; font-family: ui-monospace, Menlo, monospace; }
    #toast { position: absolute; top: 90px; left: 50%; transform: translateX(-50%); z-index: 600; display: none; }
    #toast.error { border-color: var(--unsafe); }
  </style>
</head>
<body>
  <div id="map"></div>
  <header>
    <div class="card">
      <h1>Community Safety Map Perspectives</h1>
      <div class="muted">Tap map to report how safe a place feels</div>
    </div>
    <div class="card"><button id="theme-toggle" class="ghost" type="button">Dark</button></div>
  </header>

  <div id="toast" class="card"></div>

  <div id="sheet" class="sheet card">
    <h2 id="sheet-title" style="margin:4px 0;">Add Marker</h2>
    <div class="muted">How safe does this location feel?</div>
    <div class="choices">
      <button id="choose-safe" class="choice safe" type="button">Safe</button>
      <button id="choose-unsafe" class="choice unsafe" type="button">Unsafe</button>
    </div>
    <label for="comment" class="muted">Why? (Optional)</label>
    <textarea id="comment" maxlength="280" placeholder="I feel this way because..."></textarea>
    <div class="muted counter"><span id="comment-count">0</span>/280</div>
    <div class="row">
      <button id="submit" class="primary" type="button" disabled>Save Marker</button>
      <button id="cancel" class="ghost" type="button">Cancel</button>
    </div>
  </div>

  <div id="detail" class="sheet card">
    <h2 id="detail-title" style="margin:4px 0;"></h2>
    <p id="detail-comment"></p>
    <div class="row">
      <button id="detail-edit" class="ghost" type="button">Edit</button>
      <button id="detail-delete" class="danger" type="button">Delete</button>
      <button id="detail-close" class="ghost" type="button">Close</button>
    </div>
  </div>

  <script src="https://unpkg.com/leaflet@1.9.4/dist/leaflet.js"></script>
  <script>
    const THEME_KEY = "gp_theme";
    const params = new URLSearchParams(window.location.search);
    const versionParam = parseInt(params.get("version") || "", 10);
    const version = Number.isNaN(versionParam) ? null : versionParam;

    // closed | create | edit
    const sheet = { state: "closed", lat: null, lng: null, id: null, sentiment: null, comment: "", loading: false };
    let sessionMarkers = [];
    let selected = null;
    let tempLayer = null;
    let markerLayer = null;
    let tileLayers = null;

    const map = L.map("map", { zoomControl: false }).setView([47.0707, 15.4395], 13);
    tileLayers = {
      light: L.tileLayer("https://{s}.basemaps.cartocdn.com/light_all/{z}/{x}/{y}{r}.png", { maxZoom: 20, attribution: "&copy; OpenStreetMap contributors &copy; CARTO" }),
      dark: L.tileLayer("https://{s}.basemaps.cartocdn.com/dark_all/{z}/{x}/{y}{r}.png", { maxZoom: 20, attribution: "&copy; OpenStreetMap contributors &copy; CARTO" })
    };
    markerLayer = L.layerGroup().addTo(map);

    function currentTheme() {
      const saved = localStorage.getItem(THEME_KEY);
      if (saved === "dark" || saved === "light") return saved;
      return (window.matchMedia && window.matchMedia("(prefers-color-scheme: dark)").matches) ? "dark" : "light";
    }

    function applyTheme(mode) {
      if (mode === "dark") document.documentElement.dataset.theme = "dark";
      else delete document.documentElement.dataset.theme;
      localStorage.setItem(THEME_KEY, mode);
      document.getElementById("theme-toggle").textContent = (mode === "dark") ? "Light" : "Dark";
      const want = mode === "dark" ? tileLayers.dark : tileLayers.light;
      const other = mode === "dark" ? tileLayers.light : tileLayers.dark;
      if (map.hasLayer(other)) map.removeLayer(other);
      if (!map.hasLayer(want)) want.addTo(map);
    }

    function toast(message, level) {
      const el = document.getElementById("toast");
      el.textContent = message;
      el.className = "card " + (level || "");
      el.style.display = "block";
      setTimeout(() => { el.style.display = "none"; }, 3000);
    }

    async function api(path, body) {
      const response = await fetch(path, {
        method: "POST",
        headers: { "Content-Type": "application/json" },
        body: JSON.stringify(body),
      });
      const json = await response.json().catch(() => ({}));
      if (!response.ok) throw new Error(json.message || "Request failed");
      return json;
    }

    function renderSheet() {
      const el = document.getElementById("sheet");
      el.classList.toggle("open", sheet.state !== "closed");
      document.getElementById("sheet-title").textContent = sheet.state === "edit" ? "Edit Marker" : "Add Marker";
      document.getElementById("choose-safe").classList.toggle("active", sheet.sentiment === "like");
      document.getElementById("choose-unsafe").classList.toggle("active", sheet.sentiment === "dislike");
      document.getElementById("comment").value = sheet.comment;
      document.getElementById("comment-count").textContent = String(sheet.comment.length);
      document.getElementById("submit").disabled = !sheet.sentiment || sheet.loading;
      document.getElementById("submit").textContent = sheet.loading ? "Saving..." : "Save Marker";

      if (tempLayer) { map.removeLayer(tempLayer); tempLayer = null; }
      if (sheet.state !== "closed") {
        tempLayer = L.circleMarker([sheet.lat, sheet.lng], { color: "#3b82f6", fillColor: "#3b82f6", fillOpacity: 0.5, radius: 8 }).addTo(map);
      }
    }

    function renderMarkers() {
      markerLayer.clearLayers();
      for (const m of sessionMarkers) {
        const color = m.sentiment === "like" ? "#10b981" : "#f43f5e";
        const dot = L.circleMarker([m.latitude, m.longitude], { color: "white", weight: 2, fillColor: color, fillOpacity: 0.9, radius: 8 });
        dot.on("click", (ev) => { L.DomEvent.stopPropagation(ev); openDetail(m); });
        dot.addTo(markerLayer);
      }
    }

    function closeSheet() {
      Object.assign(sheet, { state: "closed", lat: null, lng: null, id: null, sentiment: null, comment: "" });
      renderSheet();
    }

    function openCreate(lat, lng) {
      if (sheet.state !== "closed") return;
      Object.assign(sheet, { state: "create", lat: lat, lng: lng, id: null, sentiment: null, comment: "" });
      renderSheet();
    }

    function openEdit(m) {
      Object.assign(sheet, { state: "edit", lat: m.latitude, lng: m.longitude, id: m.id, sentiment: m.sentiment, comment: m.comment || "" });
      renderSheet();
    }

    function openDetail(m) {
      selected = m;
      document.getElementById("detail-title").textContent = m.sentiment === "like" ? "Safe Location" : "Unsafe Location";
      document.getElementById("detail-comment").textContent = m.comment || "No comment provided.";
      document.getElementById("detail").classList.add("open");
    }

    function closeDetail() {
      document.getElementById("detail").classList.remove("open");
    }

    async function submit() {
      if (!sheet.sentiment) { toast("Please select a sentiment (Safe/Unsafe)", "error"); return; }
      sheet.loading = true;
      renderSheet();
      try {
        const body = sheet.state === "edit"
          ? { id: sheet.id, sentiment: sheet.sentiment, comment: sheet.comment }
          : { latitude: sheet.lat, longitude: sheet.lng, sentiment: sheet.sentiment, comment: sheet.comment, version: version };
        const result = await api("/api/save-marker", body);
        const saved = result.data;
        const idx = sessionMarkers.findIndex((m) => m.id === saved.id);
        if (idx >= 0) sessionMarkers[idx] = saved; else sessionMarkers.push(saved);
        toast("Marker saved successfully!");
        sheet.loading = false;
        closeSheet();
        renderMarkers();
      } catch (e) {
        sheet.loading = false;
        renderSheet();
        toast(e.message || "Failed to save marker", "error");
      }
    }

    async function refreshSession() {
      try {
        const q = version === null ? "" : "?version=" + encodeURIComponent(version);
        const response = await fetch("/api/markers" + q);
        if (!response.ok) throw new Error("Failed to fetch markers");
        const json = await response.json();
        const ids = new Set(sessionMarkers.map((m) => m.id));
        sessionMarkers = (json.data || []).filter((m) => ids.has(m.id));
        renderMarkers();
      } catch (e) {
        toast(e.message, "error");
      }
    }

    async function removeSelected() {
      if (!selected) return;
      closeDetail();
      try {
        await api("/api/delete-marker", { id: selected.id });
        toast("Marker deleted");
        await refreshSession();
      } catch (e) {
        toast(e.message || "Failed to delete marker", "error");
      }
    }

    map.on("click", (ev) => openCreate(ev.latlng.lat, ev.latlng.lng));
    document.getElementById("choose-safe").addEventListener("click", () => { sheet.sentiment = "like"; renderSheet(); });
    document.getElementById("choose-unsafe").addEventListener("click", () => { sheet.sentiment = "dislike"; renderSheet(); });
    document.getElementById("comment").addEventListener("input", (ev) => {
      sheet.comment = ev.target.value.slice(0, 280);
      document.getElementById("comment-count").textContent = String(sheet.comment.length);
    });
    document.getElementById("submit").addEventListener("click", submit);
    document.getElementById("cancel").addEventListener("click", closeSheet);
    document.getElementById("detail-close").addEventListener("click", closeDetail);
    document.getElementById("detail-edit").addEventListener("click", () => { closeDetail(); if (selected) openEdit(selected); });
    document.getElementById("detail-delete").addEventListener("click", removeSelected);
    document.getElementById("theme-toggle").addEventListener("click", () => applyTheme(currentTheme() === "dark" ? "light" : "dark"));

    applyTheme(currentTheme());
    setTimeout(() => map.invalidateSize(), 100);
  </script>
</body>
</html>
"""


STATS_TEMPLATE = """
<!doctype html>
<html lang="en">
<head>
  <meta charset="UTF-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1.0" />
  <title>GeoPulse Live Dashboard</title>
  <link rel="stylesheet" href="https://unpkg.com/leaflet@1.9.4/dist/leaflet.css" />
  <style>
    :root {
      --bg: #f5f7fb;
      --panel: #ffffff;
      --text: #111827;
      --muted: #6b7280;
      --border: #e5e7eb;
      --accent: #2563eb;
      --ok: #16a34a;
      --shadow: 0 1px 2px rgba(0,0,0,.06), 0 10px 24px rgba(0,0,0,.05);
      --radius: 12px;
    }
    :root[data-theme="dark"] {
      --bg: #0b1020;
      --panel: #0f172a;
      --text: #e5e7eb;
      --muted: #94a3b8;
      --border: rgba(148,163,184,.22);
      --accent: #3b82f6;
      --ok: #34d399;
      --shadow: 0 1px 2px rgba(0,0,0,.35), 0 10px 24px rgba(0,0,0,.35);
    }
    * { box-sizing: border-box; }
    html, body { height: 100%; margin: 0; }
    body { display: flex; flex-direction: column; font-family: ui-sans-serif, system-ui, -apple-system, "Segoe UI", Roboto, Helvetica, Arial, sans-serif; background: var(--bg); color: var(--text); }
    header { display: flex; justify-content: space-between; align-items: center; padding: 12px 16px; background: var(--panel); border-bottom: 1px solid var(--border); }
    h1 { margin: 0; font-size: 18px; }
    .muted { color: var(--muted); font-size: 12px; }
    .kpis { display: flex; gap: 12px; }
    .kpi { padding: 6px 10px; border: 1px solid var(--border); border-radius: 10px; }
    .kpi .label { font-size: 10px; text-transform: uppercase; color: var(--muted); font-weight: 700; }
    .kpi .value { font-weight: 700; font-variant-numeric: tabular-nums; }
    main { position: relative; flex: 1; min-height: 0; }
    #map { position: absolute; inset: 0; }
    .panel { position: absolute; top: 14px; left: 14px; z-index: 400; width: 280px; display: grid; gap: 10px; padding: 12px; background: var(--panel); border: 1px solid var(--border); border-radius: var(--radius); box-shadow: var(--shadow); }
    .total { font-size: 30px; font-weight: 700; }
    .group { display: flex; gap: 6px; }
    .group button, .panel select, .panel input { flex: 1; height: 30px; font-size: 12px; border-radius: 8px; border: 1px solid var(--border); background: transparent; color: var(--text); }
    .group button.active { background: var(--accent); color: white; border-color: var(--accent); }
    .section { border-top: 1px solid var(--border); padding-top: 8px; display: grid; gap: 6px; }
    .new-marker-pulse { animation: pulse 1s ease-in-out infinite; }
    @keyframes pulse { 0% { stroke-width: 2; } 50% { stroke-width: 8; } 100% { stroke-width: 2; } }
  </style>
</head>
<body>
  <header>
    <div>
      <h1>GeoPulse Live Dashboard</h1>
      <div class="muted">Real-time stats (polling) &middot; <a href="/">Map</a></div>
    </div>
    <div class="kpis" id="kpis"></div>
  </header>
  <main>
    <div id="map"></div>
    <div class="panel">
      <div>
        <div class="total" id="total">0</div>
        <div class="muted">Visible points</div>
      </div>
      <div class="section">
        <div class="muted">Visualization</div>
        <div class="group">
          <button id="mode-markers" type="button">Markers</button>
          <button id="mode-heatmap" type="button">Heatmap</button>
          <button id="mode-h3" type="button">Grid</button>
        </div>
      </div>
      <div class="section">
        <div class="muted">Controls</div>
        <div class="group">
          <button id="live" type="button">Go Live</button>
          <button id="pull" type="button">Pull Data</button>
        </div>
      </div>
      <div class="section">
        <div class="muted">Version filter (leave empty for all campaigns)</div>
        <input id="version" type="text" placeholder="All versions" />
        <div class="muted">Compare campaigns A / B</div>
        <div class="group">
          <input id="compare-a" type="text" placeholder="A" />
          <input id="compare-b" type="text" placeholder="B" />
        </div>
        <select id="source">
          <option value="all">Both sources</option>
          <option value="A">Only A</option>
          <option value="B">Only B</option>
        </select>
      </div>
      <div class="section">
        <div class="muted">Filters</div>
        <div class="group">
          <select id="range">
            <option value="15m">Last 15m</option>
            <option value="1h">Last Hour</option>
            <option value="today">Today</option>
            <option value="all" selected>All Time</option>
          </select>
          <select id="sentiment">
            <option value="all" selected>All</option>
            <option value="like">Safe</option>
            <option value="dislike">Unsafe</option>
          </select>
        </div>
      </div>
    </div>
  </main>

  <script src="https://unpkg.com/leaflet@1.9.4/dist/leaflet.js"></script>
  <script src="https://unpkg.com/leaflet.heat@0.2.0/dist/leaflet-heat.js"></script>
  <script>
    const POLL_INTERVAL = 5000;
    const NEW_MARKER_MS = 5000;
    const state = { mode: "markers", range: "all", sentiment: "all", version: "", compareA: "", compareB: "", source: "all", live: false };

    let markers = [];
    let seen = new Set();
    let pollTimer = null;
    let layer = null;

    const map = L.map("map", { zoomControl: true }).setView([47.0707, 15.4395], 13);
    L.tileLayer("https://{s}.basemaps.cartocdn.com/light_all/{z}/{x}/{y}{r}.png", { maxZoom: 20, attribution: "&copy; OpenStreetMap contributors &copy; CARTO" }).addTo(map);

    function compareParam() {
      return (state.compareA && state.compareB) ? state.compareA + "," + state.compareB : "";
    }

    function query(extra) {
      const params = new URLSearchParams();
      params.set("range", state.range);
      params.set("sentiment", state.sentiment);
      // "today" is the viewer's day, not the server's
      params.set("tz_offset", String(new Date().getTimezoneOffset()));
      const compare = compareParam();
      if (compare) {
        params.set("compare", compare);
        params.set("source", state.source);
      } else if (state.version) {
        params.set("version", state.version);
      }
      for (const [k, v] of Object.entries(extra || {})) params.set(k, v);
      return params.toString();
    }

    function kpiBox(label, value) {
      return `<div class="kpi"><div class="label">${label}</div><div class="value">${value}</div></div>`;
    }

    function renderKpis(kpis) {
      const el = document.getElementById("kpis");
      if (kpis.A) {
        el.innerHTML = kpiBox("A safety score", kpis.A.positivity + "%") + kpiBox("A points", kpis.A.total)
          + kpiBox("B safety score", kpis.B.positivity + "%") + kpiBox("B points", kpis.B.total);
        document.getElementById("total").textContent = String(kpis.A.total + kpis.B.total);
        return;
      }
      el.innerHTML = kpiBox("Safety score", kpis.positivity + "%") + kpiBox("Velocity (15m)", kpis.velocity);
      document.getElementById("total").textContent = String(kpis.total);
    }

    function clearLayer() {
      if (layer) { map.removeLayer(layer); layer = null; }
    }

    async function renderLayer() {
      clearLayer();
      if (state.mode === "markers") {
        layer = L.layerGroup();
        for (const m of markers) {
          const color = m.sentiment === "like" ? "#10b981" : "#f43f5e";
          L.circleMarker([m.latitude, m.longitude], {
            color: m.source === "B" ? "#111827" : "white",
            weight: 2,
            fillColor: color,
            fillOpacity: m.is_new ? 1 : 0.9,
            radius: m.is_new ? 12 : 8,
            className: m.is_new ? "new-marker-pulse" : "",
          }).bindPopup(m.comment ? String(m.comment) : "No comment").addTo(layer);
        }
        layer.addTo(map);
      } else if (state.mode === "heatmap") {
        const response = await fetch("/api/heatmap?" + query());
        if (!response.ok) return;
        const json = await response.json();
        if (json.data.points.length) layer = L.heatLayer(json.data.points, json.data.options).addTo(map);
      } else {
        const response = await fetch("/api/hexbins?" + query({ zoom: map.getZoom() }));
        if (!response.ok) return;
        const collection = await response.json();
        layer = L.geoJSON(collection, {
          style: (f) => ({ color: "white", weight: 1, fillColor: f.properties.fill_color, fillOpacity: f.properties.fill_opacity }),
          onEachFeature: (f, l) => l.bindPopup(f.properties.count + " submissions"),
        }).addTo(map);
      }
    }

    async function fetchMarkers(isPolling) {
      try {
        const response = await fetch("/api/dashboard?" + query());
        if (!response.ok) throw new Error("HTTP " + response.status);
        const json = await response.json();
        const previous = new Map(markers.map((m) => [m.id, m]));
        let anyNew = false;
        markers = json.data.markers.map((m) => {
          const fresh = isPolling && !seen.has(m.id);
          if (fresh) anyNew = true;
          const old = previous.get(m.id);
          return Object.assign({}, m, { is_new: fresh || Boolean(old && old.is_new) });
        });
        markers.forEach((m) => seen.add(m.id));
        if (anyNew) {
          setTimeout(() => {
            markers = markers.map((m) => Object.assign({}, m, { is_new: false }));
            renderLayer();
          }, NEW_MARKER_MS);
        }
        renderKpis(json.data.kpis);
        await renderLayer();
      } catch (e) {
        console.error("Error fetching stats:", e);
        if (!isPolling) alert("Failed to load data");
      }
    }

    function pull() {
      seen.clear();
      fetchMarkers(false);
    }

    function setLive(live) {
      state.live = live;
      document.getElementById("live").textContent = live ? "Stop Live" : "Go Live";
      document.getElementById("live").classList.toggle("active", live);
      if (pollTimer) { clearInterval(pollTimer); pollTimer = null; }
      if (live) pollTimer = setInterval(() => fetchMarkers(true), POLL_INTERVAL);
    }

    function setMode(mode) {
      state.mode = mode;
      for (const m of ["markers", "heatmap", "h3"]) {
        document.getElementById("mode-" + m).classList.toggle("active", m === mode);
      }
      renderLayer();
    }

    document.getElementById("mode-markers").addEventListener("click", () => setMode("markers"));
    document.getElementById("mode-heatmap").addEventListener("click", () => setMode("heatmap"));
    document.getElementById("mode-h3").addEventListener("click", () => setMode("h3"));
    document.getElementById("live").addEventListener("click", () => setLive(!state.live));
    document.getElementById("pull").addEventListener("click", pull);
    document.getElementById("range").addEventListener("change", (ev) => { state.range = ev.target.value; fetchMarkers(false); });
    document.getElementById("sentiment").addEventListener("change", (ev) => { state.sentiment = ev.target.value; fetchMarkers(false); });
    document.getElementById("source").addEventListener("change", (ev) => { state.source = ev.target.value; fetchMarkers(false); });
    document.getElementById("version").addEventListener("change", (ev) => { state.version = ev.target.value.trim(); pull(); });
    document.getElementById("compare-a").addEventListener("change", (ev) => { state.compareA = ev.target.value.trim(); pull(); });
    document.getElementById("compare-b").addEventListener("change", (ev) => { state.compareB = ev.target.value.trim(); pull(); });
    map.on("zoomend", () => { if (state.mode === "h3") renderLayer(); });

    setMode("markers");
    pull();
  </script>
</body>
</html>
"""


app: Optional[Flask] = None


def signal_handler(sig, frame):
    """Handle shutdown signals"""
    logger.info("Shutting down web server...")
    if app is not None and app.config.get("MARKER_STORE") is not None:
        try:
            app.config["MARKER_STORE"].close()
        except Exception as e:
            logger.warning(f"Error closing marker store: {e}")
    sys.exit(0)


if __name__ == "__main__":
    try:
        config = load_config()
        config.validate()
    except ConfigError as e:
        logger.error(f"Refusing to start: {e}")
        sys.exit(1)

    app = create_app(config)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info(f"Starting GeoPulse Web Server on {config.host}:{config.port}")
    logger.info(f"Map available at: http://{config.host}:{config.port}/")
    logger.info(f"Dashboard available at: http://{config.host}:{config.port}/stats")
    logger.info(f"API available at: http://{config.host}:{config.port}/api/markers")

    app.run(host=config.host, port=config.port, debug=False, threaded=True)
