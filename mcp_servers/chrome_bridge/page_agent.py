"""In-page executor installed by CdpBrowserHost.

The source defines `window.__chromeBridgeAgent` (once per document) with a single
entry point `run(action)` returning a JSON-serializable result. Actions are the
content-script action objects built by the dispatcher (`{"type": "CLICK", ...}`).
"""

from __future__ import annotations

import json
from typing import Any

PAGE_AGENT_VERSION = 1
PAGE_AGENT_GLOBAL = "__chromeBridgeAgent"

PAGE_AGENT_SOURCE = r"""
(() => {
  if (window.__chromeBridgeAgent && window.__chromeBridgeAgent.version === %(version)d) return;

  const refs = new Map();
  const sleep = (ms) => new Promise((r) => setTimeout(r, ms));
  const truncate = (s, n) => {
    if (s == null) return null;
    s = String(s);
    return s.length > n ? s.slice(0, n) + '...' : s;
  };

  function resolve(selector) {
    if (!selector) return null;
    if (refs.has(selector)) {
      const el = refs.get(selector);
      if (el && el.isConnected) return el;
    }
    try { return document.querySelector(selector); } catch (e) { return null; }
  }

  function isVisible(el) {
    const st = window.getComputedStyle(el);
    return st.display !== 'none' && st.visibility !== 'hidden' && st.opacity !== '0';
  }

  function uniqueSelector(el) {
    if (el.id) return '#' + CSS.escape(el.id);
    const parts = [];
    while (el && el.nodeType === 1 && parts.length < 6) {
      let part = el.tagName.toLowerCase();
      const parent = el.parentElement;
      if (parent) {
        const same = Array.from(parent.children).filter((c) => c.tagName === el.tagName);
        if (same.length > 1) part += ':nth-of-type(' + (same.indexOf(el) + 1) + ')';
      }
      parts.unshift(part);
      if (parent && parent.id) { parts.unshift('#' + CSS.escape(parent.id)); break; }
      el = parent;
    }
    return parts.join(' > ');
  }

  function rectOf(el) {
    const r = el.getBoundingClientRect();
    return { x: Math.round(r.x), y: Math.round(r.y), width: Math.round(r.width), height: Math.round(r.height) };
  }

  function describe(el) {
    return { tag: el.tagName.toLowerCase(), id: el.id || null, text: truncate((el.textContent || '').trim(), 50) };
  }

  function notFound(selector) { return { error: 'Element not found: ' + selector }; }

  function snapshot() {
    refs.clear();
    const sel = ['a[href]', 'button', 'input', 'select', 'textarea', '[role="button"]', '[role="link"]',
      '[role="checkbox"]', '[role="radio"]', '[role="tab"]', '[onclick]', '[tabindex]'];
    const out = { url: location.href, title: document.title,
      viewport: { width: innerWidth, height: innerHeight }, scroll: { x: scrollX, y: scrollY }, elements: [] };
    document.querySelectorAll(sel.join(',')).forEach((el, i) => {
      if (!isVisible(el)) return;
      const r = el.getBoundingClientRect();
      if (r.width === 0 || r.height === 0) return;
      const ref = 'e' + i;
      refs.set(ref, el);
      out.elements.push({ ref, selector: uniqueSelector(el), tag: el.tagName.toLowerCase(), type: el.type || null,
        text: truncate((el.textContent || '').trim(), 100), placeholder: el.placeholder || null,
        value: el.value || null, href: el.href || null, role: el.getAttribute('role'),
        ariaLabel: el.getAttribute('aria-label'), rect: rectOf(el) });
    });
    return out;
  }

  function mouse(el, types) {
    const r = el.getBoundingClientRect();
    const init = { bubbles: true, cancelable: true, clientX: r.left + r.width / 2, clientY: r.top + r.height / 2 };
    types.forEach((t) => el.dispatchEvent(new MouseEvent(t, init)));
    return { x: init.clientX, y: init.clientY };
  }

  const KEY_ALIASES = { enter: 'Enter', return: 'Enter', escape: 'Escape', esc: 'Escape', tab: 'Tab', space: ' ',
    backspace: 'Backspace', delete: 'Delete', del: 'Delete', up: 'ArrowUp', down: 'ArrowDown', left: 'ArrowLeft',
    right: 'ArrowRight', arrowup: 'ArrowUp', arrowdown: 'ArrowDown', arrowleft: 'ArrowLeft',
    arrowright: 'ArrowRight', home: 'Home', end: 'End', pageup: 'PageUp', pagedown: 'PageDown' };

  async function pressKey(a) {
    const el = a.selector ? resolve(a.selector) : (document.activeElement || document.body);
    if (a.selector && !el) return notFound(a.selector);
    const key = KEY_ALIASES[String(a.key).toLowerCase()] || String(a.key);
    const mods = a.modifiers || [];
    const init = { key, bubbles: true, cancelable: true, ctrlKey: mods.includes('ctrl'),
      shiftKey: mods.includes('shift'), altKey: mods.includes('alt'), metaKey: mods.includes('meta') };
    if (el.focus) el.focus();
    const repeat = Math.max(1, a.repeat || 1);
    for (let i = 0; i < repeat; i++) {
      el.dispatchEvent(new KeyboardEvent('keydown', init));
      if (key === 'Backspace' && el.value !== undefined) {
        el.value = el.value.slice(0, -1);
        el.dispatchEvent(new InputEvent('input', { bubbles: true, inputType: 'deleteContentBackward' }));
      } else if (key.length === 1 && !init.ctrlKey && !init.altKey && !init.metaKey && el.value !== undefined) {
        el.value += init.shiftKey ? key.toUpperCase() : key;
        el.dispatchEvent(new InputEvent('input', { bubbles: true, data: key }));
      }
      el.dispatchEvent(new KeyboardEvent('keyup', init));
      if (i < repeat - 1) await sleep(50);
    }
    return { success: true, key, modifiers: mods, repeat, target: (el.tagName || 'document').toLowerCase() };
  }

  async function wait(a) {
    const timeout = a.timeout || 5000;
    const start = Date.now();
    if (a.ms || a.time) { await sleep(a.ms || a.time); return { success: true }; }
    while (Date.now() - start <= timeout) {
      if (a.selector && resolve(a.selector)) return { success: true, found: a.selector };
      if (a.text && document.body && document.body.textContent.includes(a.text)) return { success: true, found: a.text };
      if (!a.selector && !a.text) return { error: 'Invalid wait condition' };
      await sleep(100);
    }
    return { error: 'Timeout waiting for ' + (a.selector ? 'element: ' + a.selector : 'text: ' + a.text) };
  }

  function domTree(el, depth, level) {
    if (!el || el.nodeType !== 1 || level > depth) return null;
    const node = { tag: el.tagName.toLowerCase(), id: el.id || null,
      class: typeof el.className === 'string' && el.className ? el.className : null,
      text: el.children.length === 0 ? truncate((el.textContent || '').trim(), 50) : null, children: [] };
    if (level < depth) {
      for (const c of el.children) { const n = domTree(c, depth, level + 1); if (n) node.children.push(n); }
    } else if (el.children.length) {
      node.childCount = el.children.length;
    }
    return node;
  }

  function attributes(el) {
    const out = {};
    for (const at of el.attributes) out[at.name] = at.value;
    return out;
  }

  const COMMON_STYLES = ['display', 'position', 'top', 'right', 'bottom', 'left', 'width', 'height', 'margin',
    'padding', 'border', 'border-radius', 'background-color', 'color', 'font-family', 'font-size', 'font-weight',
    'line-height', 'text-align', 'flex-direction', 'justify-content', 'align-items', 'gap', 'overflow', 'z-index',
    'opacity', 'visibility', 'cursor', 'pointer-events', 'transform', 'transition', 'animation'];

  const actions = {
    async CLICK(a) {
      const el = resolve(a.selector);
      if (!el) return notFound(a.selector);
      const pos = mouse(el, ['mousedown', 'mouseup', 'click']);
      if (el.focus) el.focus();
      return { success: true, element: describe(el), position: pos };
    },
    async TYPE(a) {
      const el = resolve(a.selector);
      if (!el) return notFound(a.selector);
      el.focus();
      if (a.options && a.options.clear && el.value !== undefined) el.value = '';
      for (const ch of String(a.text || '')) {
        el.dispatchEvent(new KeyboardEvent('keydown', { key: ch, bubbles: true }));
        if (el.value !== undefined) el.value += ch; else el.textContent += ch;
        el.dispatchEvent(new InputEvent('input', { bubbles: true, data: ch }));
        el.dispatchEvent(new KeyboardEvent('keyup', { key: ch, bubbles: true }));
      }
      el.dispatchEvent(new Event('change', { bubbles: true }));
      return { success: true, text: a.text };
    },
    async SCROLL(a) {
      const o = a.options || {};
      const dir = o.direction || 'down';
      const amount = o.amount || 300;
      const target = a.selector && a.selector !== 'window' ? resolve(a.selector) : window;
      if (!target) return notFound(a.selector);
      const delta = dir === 'down' || dir === 'right' ? amount : -amount;
      if (dir === 'down' || dir === 'up') target.scrollBy({ top: delta }); else target.scrollBy({ left: delta });
      return { success: true, direction: dir, amount };
    },
    async HOVER(a) {
      const el = resolve(a.selector);
      if (!el) return notFound(a.selector);
      mouse(el, ['mouseenter', 'mouseover', 'mousemove']);
      return { success: true, element: describe(el) };
    },
    PRESS_KEY: pressKey,
    async GET_SNAPSHOT() { return snapshot(); },
    async EVALUATE(a) {
      try { return { success: true, result: await (0, eval)(a.script) }; } catch (e) { return { error: e.message }; }
    },
    WAIT: wait,
    async GET_PAGE_STATE() {
      return { url: location.href, title: document.title, readyState: document.readyState,
        scroll: { x: scrollX, y: scrollY }, viewport: { width: innerWidth, height: innerHeight } };
    },
    async GET_ELEMENT_INFO(a) {
      const el = resolve(a.selector);
      if (!el) return notFound(a.selector);
      return { ...describe(el), selector: uniqueSelector(el), rect: rectOf(el), visible: isVisible(el) };
    },
    async INSPECT_ELEMENT(a) {
      const el = resolve(a.selector);
      if (!el) return notFound(a.selector);
      const st = getComputedStyle(el);
      const css = {};
      COMMON_STYLES.forEach((p) => { css[p] = st.getPropertyValue(p); });
      return { selector: a.selector, tagName: el.tagName.toLowerCase(), id: el.id || null,
        className: el.className || null, attributes: attributes(el),
        textContent: truncate((el.textContent || '').trim(), 500), value: el.value || null,
        checked: el.checked, disabled: el.disabled, rect: rectOf(el), css, childCount: el.children.length,
        parentTag: el.parentElement ? el.parentElement.tagName.toLowerCase() : null, visible: isVisible(el) };
    },
    async GET_DOM_TREE(a) {
      const root = a.selector ? resolve(a.selector) : document.body;
      if (!root) return notFound(a.selector);
      return domTree(root, a.depth || 3, 0);
    },
    async GET_COMPUTED_STYLES(a) {
      const el = resolve(a.selector);
      if (!el) return notFound(a.selector);
      const st = getComputedStyle(el);
      const out = {};
      if (Array.isArray(a.properties)) { a.properties.forEach((p) => { out[p] = st.getPropertyValue(p); }); return out; }
      COMMON_STYLES.forEach((p) => {
        const v = st.getPropertyValue(p);
        if (v && !['none', 'normal', 'auto', '0px', 'rgba(0, 0, 0, 0)'].includes(v)) out[p] = v;
      });
      return out;
    },
    async GET_ELEMENT_HTML(a) {
      const el = resolve(a.selector);
      if (!el) return notFound(a.selector);
      const html = a.outer === false ? el.innerHTML : el.outerHTML;
      return { html, length: html.length };
    },
    async QUERY_ALL(a) {
      let nodes;
      try { nodes = document.querySelectorAll(a.selector); } catch (e) { return { error: e.message }; }
      const limit = a.limit || 20;
      const elements = Array.from(nodes).slice(0, limit).map((el, i) => ({ index: i, selector: uniqueSelector(el),
        ...describe(el), visible: isVisible(el), rect: rectOf(el) }));
      return { total: nodes.length, showing: elements.length, elements };
    },
    async FIND_BY_TEXT(a) {
      const needle = String(a.text || '');
      const tag = a.tag ? String(a.tag).toLowerCase() : null;
      const found = [];
      const walker = document.createTreeWalker(document.body, NodeFilter.SHOW_ELEMENT);
      while (walker.nextNode()) {
        const el = walker.currentNode;
        if (tag && el.tagName.toLowerCase() !== tag) continue;
        const own = Array.from(el.childNodes).filter((n) => n.nodeType === 3).map((n) => n.textContent).join('');
        if (own.includes(needle)) found.push(el);
      }
      return { found: found.length, elements: found.slice(0, 10).map((el) => ({ selector: uniqueSelector(el),
        tag: el.tagName.toLowerCase(), text: truncate(el.textContent, 100), visible: isVisible(el) })) };
    },
    async GET_ATTRIBUTES(a) {
      const el = resolve(a.selector);
      if (!el) return notFound(a.selector);
      return { selector: a.selector, attributes: attributes(el), dataset: { ...el.dataset } };
    },
    async GET_STORAGE(a) {
      const kind = a.storageType === 'session' ? 'session' : 'local';
      const storage = kind === 'session' ? sessionStorage : localStorage;
      const data = {};
      for (let i = 0; i < storage.length; i++) {
        const k = storage.key(i);
        data[k] = truncate(storage.getItem(k), 200);
      }
      return { type: kind, count: storage.length, data };
    },
    async GET_COOKIES() {
      const cookies = document.cookie.split(';').map((c) => {
        const [name, ...rest] = c.trim().split('=');
        return { name, value: truncate(rest.join('='), 100) };
      }).filter((c) => c.name);
      return { count: cookies.length, cookies };
    },
    async GET_PAGE_METRICS() {
      const mem = performance.memory || {};
      const nav = performance.getEntriesByType('navigation')[0];
      return { url: location.href, title: document.title, readyState: document.readyState,
        documentHeight: document.documentElement.scrollHeight, documentWidth: document.documentElement.scrollWidth,
        viewport: { width: innerWidth, height: innerHeight },
        elements: { total: document.querySelectorAll('*').length, forms: document.forms.length,
          images: document.images.length, links: document.links.length, scripts: document.scripts.length },
        memory: { usedJSHeapSize: mem.usedJSHeapSize || null, totalJSHeapSize: mem.totalJSHeapSize || null },
        timing: nav ? { domContentLoaded: Math.round(nav.domContentLoadedEventEnd - nav.startTime),
          load: Math.round(nav.loadEventEnd - nav.startTime) } : null };
    },
  };

  window.__chromeBridgeAgent = {
    version: %(version)d,
    async run(action) {
      const fn = actions[action && action.type];
      if (!fn) return { error: 'Unknown action: ' + (action && action.type) };
      try { return await fn(action); } catch (e) { return { error: e && e.message ? e.message : String(e) }; }
    },
  };
})();
""" % {"version": PAGE_AGENT_VERSION}


def run_expression(action: dict[str, Any]) -> str:
    """Expression that installs the executor (if needed) and runs one action."""
    return f"{PAGE_AGENT_SOURCE}\nwindow.{PAGE_AGENT_GLOBAL}.run({json.dumps(action, ensure_ascii=False)})"
