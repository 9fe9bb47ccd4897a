from quotapulse.models import ProviderProfile

CODEX = ProviderProfile(provider_id="codex", display_name="Codex", brand_color_hex="#0A84FF")
CLAUDE = ProviderProfile(provider_id="claude", display_name="Claude", brand_color_hex="#FF7A00")
COPILOT = ProviderProfile(provider_id="copilot", display_name="Copilot", brand_color_hex="#6E40C9")

PROFILES = {p.provider_id: p for p in (CODEX, CLAUDE, COPILOT)}


def claude_profile(name: str) -> ProviderProfile:
    """A multicc profile is tracked as its own provider."""
    return ProviderProfile(provider_id=f"claude:{name}", display_name=name, brand_color_hex=CLAUDE.brand_color_hex)
