from __future__ import annotations

import base64
import copy
from types import SimpleNamespace
from typing import Any

import pytest
import yaml
from kubernetes.client import ApiException, V1ObjectMeta, V1Secret

from clusterlink.src.kube import ControlPlaneClient
from clusterlink.src.resources import ObjectKey


class FakeCustomObjectsApi:
    """In-memory stand-in for ``CustomObjectsApi`` holding ClientConfig dicts."""

    def __init__(self) -> None:
        self.objects: dict[ObjectKey, dict[str, Any]] = {}
        self.replaced: list[dict[str, Any]] = []
        self.fail_replace: ApiException | None = None
        self.fail_get: ApiException | None = None
        self._resource_version = 0

    def _next_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    def add(self, client_config: dict[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(client_config)
        stored["metadata"]["resourceVersion"] = self._next_version()
        key = ObjectKey(stored["metadata"]["namespace"], stored["metadata"]["name"])
        self.objects[key] = stored
        return stored

    def delete(self, key: ObjectKey) -> None:
        del self.objects[key]

    def get_namespaced_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str
    ) -> dict[str, Any]:
        if self.fail_get is not None:
            raise self.fail_get
        stored = self.objects.get(ObjectKey(namespace, name))
        if stored is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(stored)

    def _listing(self, items: list[dict[str, Any]]) -> dict[str, Any]:
        return {
            "metadata": {"resourceVersion": str(self._resource_version)},
            "items": [copy.deepcopy(item) for item in items],
        }

    def list_namespaced_custom_object(
        self, group: str, version: str, namespace: str, plural: str, **kwargs: Any
    ) -> dict[str, Any]:
        return self._listing(
            [obj for key, obj in sorted(self.objects.items()) if key.namespace == namespace]
        )

    def list_cluster_custom_object(
        self, group: str, version: str, plural: str, **kwargs: Any
    ) -> dict[str, Any]:
        return self._listing([obj for _, obj in sorted(self.objects.items())])

    def replace_namespaced_custom_object(
        self,
        group: str,
        version: str,
        namespace: str,
        plural: str,
        name: str,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        if self.fail_replace is not None:
            raise self.fail_replace
        key = ObjectKey(namespace, name)
        stored = self.objects.get(key)
        if stored is None:
            raise ApiException(status=404, reason="Not Found")
        if body["metadata"].get("resourceVersion") != stored["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        updated = copy.deepcopy(body)
        updated["metadata"]["resourceVersion"] = self._next_version()
        self.objects[key] = updated
        self.replaced.append(copy.deepcopy(updated))
        return copy.deepcopy(updated)


class FakeCoreApi:
    """In-memory stand-in for ``CoreV1Api`` serving Secrets."""

    def __init__(self) -> None:
        self.secrets: dict[ObjectKey, V1Secret] = {}
        self.fail_read: ApiException | None = None

    def add_secret(self, secret: V1Secret) -> None:
        self.secrets[ObjectKey(secret.metadata.namespace, secret.metadata.name)] = secret

    def delete_secret(self, key: ObjectKey) -> None:
        del self.secrets[key]

    def read_namespaced_secret(self, name: str, namespace: str) -> V1Secret:
        if self.fail_read is not None:
            raise self.fail_read
        secret = self.secrets.get(ObjectKey(namespace, name))
        if secret is None:
            raise ApiException(status=404, reason="Not Found")
        return secret

    def list_namespaced_secret(self, namespace: str, **kwargs: Any) -> SimpleNamespace:
        items = [s for key, s in self.secrets.items() if key.namespace == namespace]
        return SimpleNamespace(metadata=SimpleNamespace(resource_version="1"), items=items)

    def list_secret_for_all_namespaces(self, **kwargs: Any) -> SimpleNamespace:
        return SimpleNamespace(
            metadata=SimpleNamespace(resource_version="1"), items=list(self.secrets.values())
        )


def make_client_config(
    name: str,
    namespace: str = "clusterlink",
    secret_name: str | None = None,
    context_name: str | None = None,
    annotations: dict[str, str] | None = None,
    generation: int = 1,
) -> dict[str, Any]:
    spec: dict[str, Any] = {"kubeConfigSecret": {"name": secret_name or f"{name}-kubeconfig"}}
    if context_name is not None:
        spec["contextName"] = context_name
    metadata: dict[str, Any] = {"name": name, "namespace": namespace, "generation": generation}
    if annotations is not None:
        metadata["annotations"] = dict(annotations)
    return {
        "apiVersion": "config.clusterlink.io/v1beta1",
        "kind": "ClientConfig",
        "metadata": metadata,
        "spec": spec,
    }


def kubeconfig_yaml(context: str, server: str = "https://remote.example:6443") -> str:
    return yaml.safe_dump(
        {
            "apiVersion": "v1",
            "kind": "Config",
            "clusters": [{"name": context, "cluster": {"server": server}}],
            "users": [{"name": context, "user": {"token": "remote-token"}}],
            "contexts": [{"name": context, "context": {"cluster": context, "user": context}}],
            "current-context": context,
        }
    )


def make_kubeconfig_secret(
    name: str,
    namespace: str = "clusterlink",
    context: str = "remote",
    server: str = "https://remote.example:6443",
) -> V1Secret:
    encoded = base64.b64encode(kubeconfig_yaml(context, server).encode()).decode()
    return V1Secret(
        metadata=V1ObjectMeta(name=name, namespace=namespace, resource_version="1"),
        data={"kubeconfig": encoded},
    )


class FakeSink:
    def __init__(self) -> None:
        self.clusters: list[Any] = []

    def add_cluster(self, cluster: Any) -> None:
        self.clusters.append(cluster)


@pytest.fixture
def core_api() -> FakeCoreApi:
    return FakeCoreApi()


@pytest.fixture
def custom_api() -> FakeCustomObjectsApi:
    return FakeCustomObjectsApi()


@pytest.fixture
def control_plane(core_api: FakeCoreApi, custom_api: FakeCustomObjectsApi) -> ControlPlaneClient:
    return ControlPlaneClient(core_api=core_api, custom_api=custom_api)  # type: ignore[arg-type]


@pytest.fixture
def cluster_objects(core_api: FakeCoreApi, custom_api: FakeCustomObjectsApi) -> SimpleNamespace:
    """Helpers to seed ClientConfigs with their kubeconfig Secrets."""

    def add(
        name: str,
        namespace: str = "clusterlink",
        context_name: str | None = None,
        secret_name: str | None = None,
        with_secret: bool = True,
    ) -> dict[str, Any]:
        client_config = make_client_config(
            name, namespace=namespace, secret_name=secret_name, context_name=context_name
        )
        stored = custom_api.add(client_config)
        if with_secret:
            core_api.add_secret(
                make_kubeconfig_secret(
                    client_config["spec"]["kubeConfigSecret"]["name"],
                    namespace=namespace,
                    context=context_name or name,
                )
            )
        return stored

    return SimpleNamespace(add=add)


@pytest.fixture
def fake_client_factory() -> Any:
    built: list[Any] = []

    def factory(params: Any) -> SimpleNamespace:
        client = SimpleNamespace(context=params.context_name, closed=False)
        client.close = lambda: setattr(client, "closed", True)
        built.append(client)
        return client

    factory.built = built  # type: ignore[attr-defined]
    return factory


@pytest.fixture
def make_config() -> Any:
    return make_client_config


@pytest.fixture
def make_secret() -> Any:
    return make_kubeconfig_secret


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()
