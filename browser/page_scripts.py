"""JavaScript evaluated inside scraped pages.

Every constant is a function expression taking at most one argument, so
BrowserSession.evaluate() can run it on any engine. The image registry
installed by INSTALL_IMAGE_REGISTRY lives on `window.__harvest`; the other
registry scripts are no-ops when it is missing.
"""

# Query parameter appended when reloading a failed image.
RETRY_PARAM = "harvest_retry"

INSTALL_IMAGE_REGISTRY = """
(selector) => {
  if (window.__harvest && window.__harvest.observer) {
    window.__harvest.observer.disconnect();
  }
  const registry = { nextId: 0, images: new Map(), observer: null, selector: selector };

  registry.originalSource = (img) => {
    const raw = img.currentSrc || img.getAttribute('src') || '';
    if (!raw) return '';
    try {
      const url = new URL(raw, document.baseURI);
      if (url.protocol === 'http:' || url.protocol === 'https:') {
        url.searchParams.delete('%(retry_param)s');
      }
      return url.href;
    } catch (e) {
      return raw;
    }
  };

  registry.stateOf = (img) => {
    if (!registry.originalSource(img)) return 'empty';
    if (!img.complete) return 'pending';
    return img.naturalWidth > 0 ? 'loaded' : 'error';
  };

  const register = (img) => {
    if (img.dataset.harvestId !== undefined) return;
    const id = registry.nextId++;
    img.dataset.harvestId = String(id);
    registry.images.set(id, img);
  };

  const scan = (node) => {
    if (node.nodeType !== 1) return;
    if (node.matches(selector)) register(node);
    node.querySelectorAll(selector).forEach(register);
  };

  registry.observer = new MutationObserver((mutations) => {
    for (const mutation of mutations) {
      if (mutation.type === 'childList') {
        mutation.addedNodes.forEach(scan);
      } else if (mutation.type === 'attributes' && mutation.target.nodeType === 1) {
        if (mutation.target.matches(selector)) register(mutation.target);
      }
    }
  });
  registry.observer.observe(document.body, {
    childList: true,
    subtree: true,
    attributes: true,
    attributeFilter: ['src'],
  });

  document.querySelectorAll(selector).forEach(register);
  window.__harvest = registry;
  return registry.images.size;
}
""" % {"retry_param": RETRY_PARAM}

SNAPSHOT_IMAGES = """
() => {
  const registry = window.__harvest;
  if (!registry) return [];
  const snapshot = [];
  registry.images.forEach((img, id) => {
    snapshot.push({ id: id, src: registry.originalSource(img), state: registry.stateOf(img) });
  });
  return snapshot;
}
"""

RELOAD_IMAGE = """
(id) => {
  const registry = window.__harvest;
  const img = registry && registry.images.get(id);
  if (!img) return false;
  const original = registry.originalSource(img);
  let url;
  try {
    url = new URL(original);
  } catch (e) {
    return false;
  }
  if (url.protocol !== 'http:' && url.protocol !== 'https:') return false;
  url.searchParams.set('%(retry_param)s', String(Date.now()));
  if (img.hasAttribute('srcset')) img.removeAttribute('srcset');
  img.src = url.href;
  return true;
}
""" % {"retry_param": RETRY_PARAM}

REVEAL_IMAGE = """
(id) => {
  const registry = window.__harvest;
  const img = registry && registry.images.get(id);
  if (!img) return false;
  if (img.loading === 'lazy') img.loading = 'eager';
  img.scrollIntoView({ block: 'center' });
  return true;
}
"""

DISCONNECT_IMAGE_REGISTRY = """
() => {
  if (window.__harvest && window.__harvest.observer) {
    window.__harvest.observer.disconnect();
  }
  return true;
}
"""

SCROLL_TO_BOTTOM = """
() => {
  const height = document.body.scrollHeight;
  window.scrollTo(0, height);
  return height;
}
"""

DOCUMENT_HEIGHT = """
() => document.body.scrollHeight
"""

PAGE_METRICS = """
(selector) => ({
  scrollHeight: document.body.scrollHeight,
  viewportHeight: window.innerHeight || document.documentElement.clientHeight,
  elementCount: document.querySelectorAll(selector).length,
})
"""

COLLECT_IMAGE_URLS = """
(selector) => {
  const urls = [];
  document.querySelectorAll(selector).forEach((img) => {
    const raw = img.currentSrc || img.src || '';
    if (!raw) return;
    try {
      const url = new URL(raw, document.baseURI);
      if (url.protocol === 'http:' || url.protocol === 'https:') {
        url.searchParams.delete('%(retry_param)s');
        urls.push(url.href);
      } else if (url.protocol === 'blob:') {
        urls.push(raw);
      }
    } catch (e) {
      // unparseable source, skip
    }
  });
  return urls;
}
""" % {"retry_param": RETRY_PARAM}

FETCH_AS_BASE64 = """
async (url) => {
  try {
    const response = await fetch(url, { credentials: 'include' });
    if (!response.ok) {
      return { data: null, contentType: null, status: response.status };
    }
    const blob = await response.blob();
    const data = await new Promise((resolve) => {
      const reader = new FileReader();
      reader.onloadend = () => resolve((reader.result || '').split(',')[1] || null);
      reader.onerror = () => resolve(null);
      reader.readAsDataURL(blob);
    });
    return { data: data, contentType: blob.type || null, status: response.status };
  } catch (e) {
    return { data: null, contentType: null, status: 0, error: String(e) };
  }
}
"""

FORCE_LOAD_IMAGE = """
async (url) => {
  return await new Promise((resolve) => {
    const img = new Image();
    img.style.display = 'none';
    img.onload = () => resolve(true);
    img.onerror = () => resolve(false);
    img.src = url;
    (document.body || document.documentElement).appendChild(img);
  });
}
"""

SET_STORAGE = """
(items) => {
  let count = 0;
  for (const [key, value] of Object.entries(items.local || {})) {
    window.localStorage.setItem(key, value);
    count++;
  }
  for (const [key, value] of Object.entries(items.session || {})) {
    window.sessionStorage.setItem(key, value);
    count++;
  }
  return count;
}
"""
