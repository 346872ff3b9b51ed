# vuln_pipeline/ecosystems.py
# Canonical ecosystem names, their aliases and package URL types.

PACKAGE_ECOSYSTEMS = ("npm", "PyPI", "Go", "Maven", "crates.io", "RubyGems", "NuGet", "Packagist")
OS_ECOSYSTEMS = ("Debian", "Ubuntu", "Alpine")

# Lower-cased alias -> canonical name
ECOSYSTEM_ALIASES = {
    "python": "PyPI",
    "pypi": "PyPI",
    "pip": "PyPI",
    "node.js": "npm",
    "node": "npm",
    "npm": "npm",
    "go": "Go",
    "golang": "Go",
    "maven": "Maven",
    "java": "Maven",
    "crates.io": "crates.io",
    "cargo": "crates.io",
    "rust": "crates.io",
    "rubygems": "RubyGems",
    "gem": "RubyGems",
    "nuget": "NuGet",
    "packagist": "Packagist",
    "composer": "Packagist",
    "debian": "Debian",
    "deb": "Debian",
    "ubuntu": "Ubuntu",
    "alpine": "Alpine",
    "apk": "Alpine",
}

# canonical name -> (purl type, purl namespace or None)
PURL_TYPES = {
    "npm": ("npm", None),
    "PyPI": ("pypi", None),
    "Go": ("golang", None),
    "Maven": ("maven", None),
    "crates.io": ("cargo", None),
    "RubyGems": ("gem", None),
    "NuGet": ("nuget", None),
    "Packagist": ("composer", None),
    "Debian": ("deb", "debian"),
    "Ubuntu": ("deb", "ubuntu"),
    "Alpine": ("apk", "alpine"),
}


def canonical_ecosystem(name: str | None) -> str | None:
    """Maps an ecosystem alias to its canonical spelling. Unknown names are returned stripped."""
    if name is None:
        return None
    stripped = name.strip()
    return ECOSYSTEM_ALIASES.get(stripped.lower(), stripped)


def is_os_ecosystem(name: str | None) -> bool:
    return canonical_ecosystem(name) in OS_ECOSYSTEMS
