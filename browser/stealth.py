"""Scripts that reduce automation-detection signals in scraped pages.

Each snippet is wrapped in its own try block so one failing override does
not prevent the rest from applying.
"""

REMOVE_WEBDRIVER_PROPERTY = """
try {
  if ('webdriver' in navigator) {
    delete navigator.webdriver;
  }
  const descriptor = Object.getOwnPropertyDescriptor(navigator, 'webdriver');
  if (!descriptor || descriptor.configurable !== false) {
    Object.defineProperty(navigator, 'webdriver', { get: () => undefined, configurable: true });
  }
} catch (e) {
  console.debug('Could not redefine webdriver property');
}
"""

ADD_FAKE_PLUGINS = """
try {
  if (!navigator.plugins || navigator.plugins.length === 0) {
    Object.defineProperty(navigator, 'plugins', {
      get: () => ({
        length: 5,
        0: { name: 'Chrome PDF Plugin' },
        1: { name: 'Chrome PDF Viewer' },
        2: { name: 'Native Client' },
        3: { name: 'WebKit built-in PDF' },
        4: { name: 'Microsoft Edge PDF Plugin' }
      }),
      configurable: true
    });
  }
} catch (e) {
  console.debug('Could not add fake plugins');
}
"""

PATCH_PERMISSIONS_QUERY = """
try {
  if (navigator.permissions && navigator.permissions.query) {
    const originalQuery = navigator.permissions.query.bind(navigator.permissions);
    navigator.permissions.query = (parameters) =>
      parameters && parameters.name === 'notifications'
        ? Promise.resolve({ state: Notification.permission })
        : originalQuery(parameters);
  }
} catch (e) {
  console.debug('Could not patch permissions query');
}
"""

ADD_BROWSER_PROPERTIES = """
try {
  if (!window.chrome) {
    window.chrome = { runtime: { onConnect: null, onMessage: null } };
  }
  if (window.callPhantom) {
    delete window.callPhantom;
  }
  if (window._phantom) {
    delete window._phantom;
  }
} catch (e) {
  console.debug('Could not add browser properties');
}
"""

STEALTH_SCRIPTS: tuple[str, ...] = (
    REMOVE_WEBDRIVER_PROPERTY,
    ADD_FAKE_PLUGINS,
    PATCH_PERMISSIONS_QUERY,
    ADD_BROWSER_PROPERTIES,
)


def get_stealth_script() -> str:
    """Return all stealth snippets joined into one script."""
    return "\n".join(STEALTH_SCRIPTS)
