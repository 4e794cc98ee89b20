from __future__ import annotations

# Single self-contained page: no build step, no framework, WebSocket client inline.
# The server is authoritative; the page only reflects events and calls the REST routes.
_CANVAS_HTML = r"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8" />
<meta name="viewport" content="width=device-width, initial-scale=1" />
<title>agent-canvas</title>
<style>
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body {
    font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
    background: #1a1a1a; color: #e0e0e0;
    height: 100vh; display: flex; flex-direction: column;
  }
  #toolbar {
    display: flex; align-items: center; gap: 8px;
    padding: 8px 12px; background: #111; border-bottom: 1px solid #333;
    font-size: 13px; flex-shrink: 0;
  }
  #toolbar .logo { font-weight: 600; color: #fff; margin-right: 12px; }
  #toolbar button, #toolbar input {
    background: #2a2a2a; border: 1px solid #444; color: #ccc;
    padding: 4px 8px; border-radius: 4px; font-size: 12px;
  }
  #toolbar button { cursor: pointer; }
  #toolbar button:hover { background: #3a3a3a; color: #fff; }
  #toolbar #io-panel { width: 110px; }
  #toolbar #io-path { width: 220px; }
  #toolbar details { position: relative; color: #888; font-size: 12px; }
  #toolbar details summary { cursor: pointer; }
  #toolbar details p {
    position: absolute; top: 24px; left: 0; width: 360px; z-index: 10;
    background: #222; border: 1px solid #444; border-radius: 4px; padding: 8px 10px;
    color: #ccc; line-height: 1.4;
  }
  #toolbar .status { margin-left: auto; font-size: 11px; color: #666; }
  #toolbar .status.connected { color: #4a4; }
  #io-result { font-size: 11px; color: #888; }
  #panels { display: flex; flex: 1; overflow: hidden; }
  .panel {
    flex: 1; display: flex; flex-direction: column;
    border-right: 1px solid #333; min-width: 200px;
  }
  .panel:last-child { border-right: none; }
  .panel-header {
    display: flex; align-items: center; justify-content: space-between;
    padding: 4px 8px; background: #1e1e1e; border-bottom: 1px solid #333;
    font-size: 11px; color: #888;
  }
  .panel-header input {
    background: transparent; border: none; color: #aaa;
    font-size: 11px; width: 160px; outline: none;
  }
  .panel-header .close-btn { cursor: pointer; color: #666; padding: 0 4px; }
  .panel-header .close-btn:hover { color: #f66; }
  .canvas-frame { flex: 1; border: none; background: #fff; }
  .empty-state {
    flex: 1; display: flex; align-items: center; justify-content: center;
    color: #555; font-size: 14px; background: #fff;
  }
</style>
</head>
<body>
<div id="toolbar">
  <span class="logo">&#9703; agent-canvas</span>
  <input id="io-panel" placeholder="panel" value="default" />
  <input id="io-path" placeholder="path/to/file.html" />
  <button onclick="pushToFile()">&#8593; Push</button>
  <button onclick="pullFromFile()">&#8595; Pull</button>
  <button onclick="addPanel()">+ Panel</button>
  <span id="io-result"></span>
  <details>
    <summary>What is this?</summary>
    <p>A live canvas for agents. An agent POSTs HTML to <code>/render</code> and it shows up here
    instantly. Push saves a panel to a file under the project root; Pull loads a file into a panel.
    Panels survive restarts.</p>
  </details>
  <span id="status" class="status">connecting...</span>
</div>
<div id="panels"></div>

<script>
var WS_URL = (location.protocol === 'https:' ? 'wss://' : 'ws://') + location.host + '/ws';
var ws;
var reconnectTimer;

function connect() {
  ws = new WebSocket(WS_URL);
  ws.onopen = function () {
    document.getElementById('panels').innerHTML = '';
    setStatus('● connected', true);
  };
  ws.onclose = function () {
    setStatus('○ disconnected', false);
    clearTimeout(reconnectTimer);
    reconnectTimer = setTimeout(connect, 1000);
  };
  ws.onmessage = function (e) {
    var msg = JSON.parse(e.data);
    if (msg.type === 'render') updatePanel(msg.panel, msg.html);
    else if (msg.type === 'panel_created') ensurePanel(msg.panel);
    else if (msg.type === 'panel_renamed') renameLocal(msg.old, msg['new']);
    else if (msg.type === 'panel_deleted') removeLocal(msg.panel);
  };
}

function setStatus(text, connected) {
  var el = document.getElementById('status');
  el.textContent = text;
  el.className = connected ? 'status connected' : 'status';
}

function findPanel(name) {
  return document.querySelector('[data-panel="' + name + '"]');
}

function ensurePanel(name) {
  var panel = findPanel(name);
  if (panel) return panel;
  panel = document.createElement('div');
  panel.className = 'panel';
  panel.dataset.panel = name;
  var header = document.createElement('div');
  header.className = 'panel-header';
  var input = document.createElement('input');
  input.value = name;
  input.onchange = function () { requestRename(panel.dataset.panel, input); };
  var close = document.createElement('span');
  close.className = 'close-btn';
  close.textContent = '✕';
  close.onclick = function () { requestDelete(panel.dataset.panel); };
  header.appendChild(input);
  header.appendChild(close);
  var empty = document.createElement('div');
  empty.className = 'empty-state';
  empty.dataset.empty = 'true';
  empty.textContent = 'waiting for agent...';
  panel.appendChild(header);
  panel.appendChild(empty);
  document.getElementById('panels').appendChild(panel);
  return panel;
}

function updatePanel(name, html) {
  var panel = ensurePanel(name);
  var empty = panel.querySelector('[data-empty]');
  if (empty && html) empty.remove();
  if (!html) return;
  var frame = panel.querySelector('iframe');
  if (!frame) {
    frame = document.createElement('iframe');
    frame.className = 'canvas-frame';
    frame.setAttribute('sandbox', 'allow-scripts');
    panel.appendChild(frame);
  }
  frame.srcdoc = html;
}

function renameLocal(oldName, newName) {
  var panel = findPanel(oldName);
  if (!panel) return;
  panel.dataset.panel = newName;
  panel.querySelector('.panel-header input').value = newName;
}

function removeLocal(name) {
  var panel = findPanel(name);
  if (panel) panel.remove();
}

async function api(method, url, body) {
  var opts = { method: method, headers: { 'Content-Type': 'application/json' } };
  if (body !== undefined) opts.body = JSON.stringify(body);
  var res = await fetch(url, opts);
  var data = {};
  try { data = await res.json(); } catch (err) { data = { ok: false, error: 'HTTP ' + res.status }; }
  return data;
}

function report(text) {
  document.getElementById('io-result').textContent = text;
}

async function addPanel() {
  var data = await api('POST', '/panels', {});
  if (!data.ok) report('Error: ' + data.error);
}

async function requestRename(oldName, input) {
  var newName = input.value.trim();
  if (!newName || newName === oldName) { input.value = oldName; return; }
  var data = await api('PATCH', '/panels/' + encodeURIComponent(oldName), { newName: newName });
  if (!data.ok) { input.value = oldName; report('Error: ' + data.error); }
}

async function requestDelete(name) {
  var data = await api('DELETE', '/panels/' + encodeURIComponent(name));
  if (!data.ok) report('Error: ' + data.error);
}

async function pushToFile() {
  var panel = document.getElementById('io-panel').value.trim() || 'default';
  var path = document.getElementById('io-path').value.trim();
  if (!path) { report('Enter a file path'); return; }
  var data = await api('POST', '/push', { panel: panel, path: path });
  report(data.ok ? 'Pushed to ' + data.path : 'Error: ' + data.error);
}

async function pullFromFile() {
  var panel = document.getElementById('io-panel').value.trim() || 'default';
  var path = document.getElementById('io-path').value.trim();
  if (!path) { report('Enter a file path'); return; }
  var data = await api('POST', '/pull', { panel: panel, path: path });
  report(data.ok ? 'Pulled ' + path + ' into ' + data.panel : 'Error: ' + data.error);
}

connect();
</script>
</body>
</html>
"""


def render_canvas_html() -> str:
    return _CANVAS_HTML
