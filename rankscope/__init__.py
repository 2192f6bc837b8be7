"""rankscope - keyword discovery service.

Analyzes a target website and discovers the search keywords it ranks for:
- Content scraping of the target page
- AI-assisted keyword generation (with a deterministic fallback)
- Search volume, competition and CPC enrichment
- Search-rank verification and competitor discovery
- Persistence of results with live, pollable progress
"""

__version__ = "0.1.0"
