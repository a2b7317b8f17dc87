# fleet_trip_analytics/common/truststore_context.py
"""
SSL verification settings for outbound HTTP calls.

The geocoder is the only component that talks to the network. Its
`GeocoderConfig` offers three verification modes plus an opt-in to the
operating system's trust store, which is needed behind TLS-inspecting
corporate proxies whose root CA lives only in the OS store.

`truststore` is imported lazily, so it is only required when
`use_truststore=True`.
"""

import ssl
from ssl import SSLContext

from fleet_trip_analytics.config import GeocoderConfig

__all__: list[str] = ['build_truststore_ssl_context', 'resolve_ssl_verify']


def build_truststore_ssl_context() -> SSLContext:
    """
    Create an SSLContext that validates against the OS trust store.

    Returns:
        SSLContext using PROTOCOL_TLS_CLIENT backed by truststore.

    Raises:
        RuntimeError: If truststore is not installed.
    """
    try:
        import truststore  # noqa: PLC0415
    except ImportError as import_error:
        raise RuntimeError(
            'truststore is required when use_truststore=True; '
            'install it with: pip install truststore'
        ) from import_error

    ssl_context: SSLContext = truststore.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    return ssl_context


def resolve_ssl_verify(geocoder_config: GeocoderConfig) -> SSLContext | bool | str:
    """
    Translate geocoder SSL settings into an httpx `verify` argument.

    The trust store takes precedence, but only while verification is enabled:
    `verify_ssl=False` always disables verification.

    Args:
        geocoder_config: Geocoder configuration.

    Returns:
        An SSLContext, a bool, or a CA bundle path accepted by httpx.
    """
    if geocoder_config.use_truststore and geocoder_config.verify_ssl is not False:
        return build_truststore_ssl_context()
    return geocoder_config.verify_ssl
