"""
1Password client for secret references of the form "vault/item/field"
"""

from typing import Optional


def parse_reference(ref: str) -> Optional[tuple[str, str, str]]:
    """Parse 'vault/item/field' into (vault, item, field). Returns None if invalid."""
    if not ref or not isinstance(ref, str):
        return None
    parts = [p.strip() for p in ref.strip().split("/")]
    if len(parts) != 3 or not all(parts):
        return None
    return parts[0], parts[1], parts[2]


async def resolve_secret(ref: str, token: str) -> str:
    """
    Resolve a secret through a 1Password service account.

    Raises:
        ValueError: If the reference is not 'vault/item/field'
        RuntimeError: If the lookup fails
    """
    parsed = parse_reference(ref)
    if parsed is None:
        raise ValueError(f"Invalid 1Password reference '{ref}', expected 'vault/item/field'")
    vault, item, field = parsed

    from onepassword.client import Client

    try:
        client = await Client.authenticate(
            auth=token,
            integration_name="x402-stellar-facilitator",
            integration_version="1.0.0",
        )
        return await client.secrets.resolve(f"op://{vault}/{item}/{field}")
    except Exception as e:
        raise RuntimeError(f"Failed to retrieve secret from 1Password: {e}") from e
