"""
API package for the audio diagnostics FastAPI backend.

Engine modules:
- Descriptor identity and keys (descriptor_identity.py)
- Analysis profiles and ad hoc overrides (analysis_profiles.py)
- Descriptor construction (descriptor_builder.py)
- Calculator registry (calculator_registry.py)
- Analysis intents (analysis_intents.py)
- Audio feature cache records (feature_cache.py)
- Timeline topology and caches (timeline_store.py)
- Cache diff computation (cache_diff.py)
- Regeneration scheduling (jobs/)
- Missing-features popup (missing_popup.py)
- Diagnostics aggregate (diagnostics_store.py)

HTTP layer:
- Diagnostics routes (diagnostics.py)
- System health and info (system.py)
- App configuration (app_config.py)
"""
