"""Capability interfaces the stacks build in-cluster resources through.

Each stack receives only the capabilities it uses. The concrete classes
all declare into the stack's resource graph through one Kubernetes
provider.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

from passlib.hash import apr_md5_crypt

from ..config.models import BasicAuthConfig, OAuthConfig
from ..core import tokens, values
from ..core.graph import ResourceGraph
from ..core.resource import ResourceHandle

REVISION_MAX_HISTORY = 3
HELM_TIMEOUT = 300
CLUSTER_ISSUER = "letsencrypt-tls-issuer"
OAUTH2_PROXY_IMAGE = "quay.io/oauth2-proxy/oauth2-proxy:v7.6.0"
OAUTH2_PROXY_PORT = 8888


class NamespaceFactory(Protocol):
    def namespace(self, name: str, labels: Mapping[str, str] | None = None) -> ResourceHandle: ...


class HelmDeployer(Protocol):
    def release(
        self,
        name: str,
        chart: str,
        version: str,
        repo: str,
        namespace: str | ResourceHandle,
        values: Mapping[str, Any] | None = None,
        depends_on: Sequence = (),
    ) -> ResourceHandle: ...


class IngressFactory(Protocol):
    def ingress(
        self,
        name: str,
        namespace: str,
        host: str,
        service: str,
        port: int,
        annotations: Mapping[str, str] | None = None,
        depends_on: Sequence = (),
    ) -> ResourceHandle: ...


@dataclass
class Protection:
    """How a component is put behind authentication."""

    # Ingress annotations to add
    annotations: dict = field(default_factory=dict)
    # Sidecar containers to run next to the component
    containers: list = field(default_factory=list)
    # Port the service should target
    port: int | None = None
    depends_on: list = field(default_factory=list)


class OAuth2Injector(Protocol):
    def protect(
        self, component: str, namespace: str, upstream_port: int, protocol: str = "http"
    ) -> Protection: ...


class KubernetesNamespaceFactory:
    """Creates each namespace once and hands out the same handle after."""

    def __init__(self, graph: ResourceGraph, provider: ResourceHandle):
        self._graph = graph
        self._provider = provider
        self._namespaces: dict[str, ResourceHandle] = {}

    def namespace(self, name: str, labels: Mapping[str, str] | None = None) -> ResourceHandle:
        if name not in self._namespaces:
            metadata: dict[str, Any] = {"name": name}
            if labels:
                metadata["labels"] = dict(labels)
            self._namespaces[name] = self._graph.declare(
                f"{name}-ns",
                tokens.K8S_NAMESPACE,
                {"metadata": metadata},
                provider=self._provider,
            )
        return self._namespaces[name]


class HelmReleaseDeployer:
    """Installs charts from their public repositories with pinned versions.

    ``namespace`` may be a handle from a ``NamespaceFactory``; the release
    then waits for the namespace and installs into its name.
    """

    def __init__(
        self,
        graph: ResourceGraph,
        provider: ResourceHandle,
        max_history: int = REVISION_MAX_HISTORY,
        timeout: int = HELM_TIMEOUT,
    ):
        self._graph = graph
        self._provider = provider
        self.max_history = max_history
        self.timeout = timeout

    def release(
        self,
        name: str,
        chart: str,
        version: str,
        repo: str,
        namespace: str | ResourceHandle,
        values: Mapping[str, Any] | None = None,
        depends_on: Sequence = (),
    ) -> ResourceHandle:
        depends_on = list(depends_on)
        if isinstance(namespace, ResourceHandle):
            depends_on.append(namespace)
            namespace = self._graph.get(namespace.name).inputs["metadata"]["name"]
        inputs = {
            "name": name,
            "chart": chart,
            "version": version,
            "namespace": namespace,
            "maxHistory": self.max_history,
            "timeout": self.timeout,
            "values": dict(values or {}),
        }
        # OCI charts carry their registry in the chart reference
        if repo:
            inputs["repositoryOpts"] = {"repo": repo}
        return self._graph.declare(
            name,
            tokens.HELM_RELEASE,
            inputs,
            provider=self._provider,
            depends_on=depends_on,
            timeout=float(self.timeout),
            ignore_changes=("checksum",),
        )


class NginxIngressFactory:
    """TLS ingresses served by ingress-nginx with cert-manager certificates."""

    def __init__(
        self,
        graph: ResourceGraph,
        provider: ResourceHandle,
        cluster_issuer: str = CLUSTER_ISSUER,
        ingress_class: str = "nginx",
    ):
        self._graph = graph
        self._provider = provider
        self.cluster_issuer = cluster_issuer
        self.ingress_class = ingress_class

    def ingress(
        self,
        name: str,
        namespace: str,
        host: str,
        service: str,
        port: int,
        annotations: Mapping[str, str] | None = None,
        depends_on: Sequence = (),
    ) -> ResourceHandle:
        return self._graph.declare(
            f"{name}-ingress",
            tokens.K8S_INGRESS,
            {
                "metadata": {
                    "name": f"{name}-ing",
                    "namespace": namespace,
                    "annotations": {
                        "cert-manager.io/cluster-issuer": self.cluster_issuer,
                        "nginx.ingress.kubernetes.io/rewrite-target": "/",
                        **(annotations or {}),
                    },
                },
                "spec": {
                    "ingressClassName": self.ingress_class,
                    "tls": [{"hosts": [host], "secretName": f"{name}-tls"}],
                    "rules": [
                        {
                            "host": host,
                            "http": {
                                "paths": [
                                    {
                                        "path": "/",
                                        "pathType": "Prefix",
                                        "backend": {
                                            "service": {"name": service, "port": {"number": port}}
                                        },
                                    }
                                ]
                            },
                        }
                    ],
                },
            },
            provider=self._provider,
            depends_on=depends_on,
        )


class OAuth2SidecarInjector:
    """Runs oauth2-proxy as a sidecar in front of the component's port."""

    def __init__(
        self,
        graph: ResourceGraph,
        provider: ResourceHandle,
        oauth: OAuthConfig,
        domain: str,
        image: str = OAUTH2_PROXY_IMAGE,
    ):
        self._graph = graph
        self._provider = provider
        self.oauth = oauth
        self.domain = domain
        self.image = image

    def _environment(self, component: str, upstream_port: int, protocol: str) -> dict:
        host = "localhost" if protocol == "https" else "127.0.0.1"
        env = {
            "OAUTH2_PROXY_PROVIDER": self.oauth.provider,
            "OAUTH2_PROXY_OIDC_ISSUER_URL": self.oauth.issuer_url,
            "OAUTH2_PROXY_SCOPE": self.oauth.scope,
            "OAUTH2_PROXY_REDIRECT_URL": f"https://{component}.{self.domain}/oauth2/callback",
            "OAUTH2_PROXY_UPSTREAMS": f"{protocol}://{host}:{upstream_port}",
            "OAUTH2_PROXY_HTTP_ADDRESS": f"0.0.0.0:{OAUTH2_PROXY_PORT}",
            "OAUTH2_PROXY_EMAIL_DOMAINS": "*",
            "OAUTH2_PROXY_PASS_USER_HEADERS": "true",
            "OAUTH2_PROXY_COOKIE_HTTPONLY": "true",
            "OAUTH2_PROXY_COOKIE_SAMESITE": "lax",
            "OAUTH2_PROXY_SESSION_COOKIE_MINIMAL": "true",
            "OAUTH2_PROXY_SKIP_JWT_BEARER_TOKENS": "true",
            "OAUTH2_PROXY_SKIP_PROVIDER_BUTTON": "true",
            "OAUTH2_PROXY_SILENCE_PING_LOGGING": "true",
        }
        if protocol == "https":
            env["OAUTH2_PROXY_SSL_UPSTREAM_INSECURE_SKIP_VERIFY"] = "true"
        if self.oauth.groups_claim:
            env["OAUTH2_PROXY_OIDC_GROUPS_CLAIM"] = self.oauth.groups_claim
        return env

    def protect(
        self, component: str, namespace: str, upstream_port: int, protocol: str = "http"
    ) -> Protection:
        secret = self._graph.declare(
            f"oauth2-proxy-client-{component}",
            tokens.K8S_SECRET,
            {
                "metadata": {"name": f"oauth2-proxy-client-{component}", "namespace": namespace},
                "stringData": {
                    "OAUTH2_PROXY_CLIENT_ID": self.oauth.client_id,
                    "OAUTH2_PROXY_CLIENT_SECRET": values.seal(self.oauth.client_secret),
                    "OAUTH2_PROXY_COOKIE_SECRET": values.seal(self.oauth.cookie_secret),
                },
            },
            provider=self._provider,
        )
        config_map = self._graph.declare(
            f"oauth2-proxy-config-{component}",
            tokens.K8S_CONFIG_MAP,
            {
                "metadata": {"name": f"oauth2-proxy-config-{component}", "namespace": namespace},
                "data": self._environment(component, upstream_port, protocol),
            },
            provider=self._provider,
            depends_on=[secret],
        )
        container = {
            "name": "oauth2-proxy",
            "image": self.image,
            "ports": [{"name": "oauth2-proxy", "containerPort": OAUTH2_PROXY_PORT}],
            "envFrom": [
                {"configMapRef": {"name": f"oauth2-proxy-config-{component}"}},
                {"secretRef": {"name": f"oauth2-proxy-client-{component}"}},
            ],
        }
        return Protection(
            containers=[container],
            port=OAUTH2_PROXY_PORT,
            depends_on=[secret, config_map],
        )


def _salt(username: str) -> str:
    # Hex digits are valid apr1 salt characters; a stable salt keeps the
    # rendered secret unchanged between runs
    return hashlib.sha256(username.encode("utf-8")).hexdigest()[:8]


def htpasswd_entry(username: str, password: str) -> str:
    return f"{username}:{apr_md5_crypt.using(salt=_salt(username)).hash(password)}"


class BasicAuthInjector:
    """Ingress-level basic authentication from an htpasswd secret."""

    def __init__(self, graph: ResourceGraph, provider: ResourceHandle, basic_auth: BasicAuthConfig):
        self._graph = graph
        self._provider = provider
        self.basic_auth = basic_auth

    def protect(
        self, component: str, namespace: str, upstream_port: int, protocol: str = "http"
    ) -> Protection:
        username = self.basic_auth.username
        entry = values.apply(
            values.seal(self.basic_auth.password),
            lambda password: htpasswd_entry(username, password),
        )
        secret_name = f"{component}-basic-auth"
        secret = self._graph.declare(
            secret_name,
            tokens.K8S_SECRET,
            {
                "metadata": {"name": secret_name, "namespace": namespace},
                "stringData": {"auth": entry},
            },
            provider=self._provider,
        )
        return Protection(
            annotations={
                "nginx.ingress.kubernetes.io/auth-type": "basic",
                "nginx.ingress.kubernetes.io/auth-secret": secret_name,
                "nginx.ingress.kubernetes.io/auth-realm": "Authentication Required",
            },
            port=upstream_port,
            depends_on=[secret],
        )
