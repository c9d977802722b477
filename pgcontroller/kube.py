"""
Kubernetes API access: custom resources, secrets and events.

ApiException is translated at this boundary: 404 becomes NotFoundError, 409
becomes PatchConflictError, transient failures are retried with exponential
backoff and anything else ends up as StoreError.
"""

import time
import base64
import logging
from datetime import datetime, timezone
from typing import List, Optional, Type

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .config import Config
from .errors import NotFoundError, PatchConflictError, StoreError
from .models import Resource, Secret

logger = logging.getLogger("postgres-controller.kube")

_TRANSIENT_STATUSES = {0, 429, 500, 502, 503, 504}


def _encode(data: dict) -> dict:
    return {k: base64.b64encode(v.encode()).decode() for k, v in data.items()}


def _decode(data: Optional[dict]) -> dict:
    return {k: base64.b64decode(v).decode() for k, v in (data or {}).items()}


class KubernetesStore:
    """Handles all Kubernetes API interactions"""

    def __init__(self, api_client=None):
        if api_client is None:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                logger.warning("Failed to load in-cluster config, trying local kubeconfig")
                config.load_kube_config()

        self.custom = client.CustomObjectsApi(api_client)
        self.v1 = client.CoreV1Api(api_client)
        self.group = Config.CRD_GROUP
        self.version = Config.CRD_VERSION

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    def _call(self, description: str, fn, *args, **kwargs):
        """
        Run an API call with exponential backoff on transient failures

        Args:
            description: What is being done, for logs and errors
            fn: Client method to call
        """
        for attempt in range(Config.MAX_RETRIES + 1):
            try:
                return fn(*args, **kwargs)
            except ApiException as e:
                if e.status == 404:
                    raise NotFoundError(f"{description}: not found") from e
                if e.status == 409:
                    raise PatchConflictError(f"{description}: {e.reason}") from e
                if e.status not in _TRANSIENT_STATUSES or attempt == Config.MAX_RETRIES:
                    logger.error(f"Failed {description} after {attempt + 1} attempts: {e.reason}")
                    raise StoreError(f"{description}: {e.status} {e.reason}") from e
                sleep_time = Config.RETRY_BACKOFF_BASE ** attempt
                logger.warning(f"Error {description} (attempt {attempt + 1}/{Config.MAX_RETRIES}), "
                               f"retrying in {sleep_time}s: {e.reason}")
                time.sleep(sleep_time)

    # ------------------------------------------------------------------------
    # custom resources
    # ------------------------------------------------------------------------

    def get(self, kind: Type[Resource], namespace: str, name: str) -> Resource:
        obj = self._call(f"fetching {kind.KIND} {namespace}/{name}",
                         self.custom.get_namespaced_custom_object,
                         self.group, self.version, namespace, kind.PLURAL, name)
        return kind.from_dict(obj)

    def list(self, kind: Type[Resource], namespace: str = None) -> List[Resource]:
        """List records of a kind, in one namespace or cluster-wide"""
        items, token = [], None
        while True:
            kwargs = {"_continue": token} if token else {}
            if namespace:
                page = self._call(f"listing {kind.KIND} in {namespace}",
                                  self.custom.list_namespaced_custom_object,
                                  self.group, self.version, namespace, kind.PLURAL, **kwargs)
            else:
                page = self._call(f"listing {kind.KIND}",
                                  self.custom.list_cluster_custom_object,
                                  self.group, self.version, kind.PLURAL, **kwargs)
            items.extend(kind.from_dict(obj) for obj in page.get("items", []))
            token = (page.get("metadata") or {}).get("continue")
            if not token:
                return items

    def update(self, resource: Resource) -> Resource:
        """Replace metadata and spec; fails with PatchConflictError on a stale resourceVersion"""
        body = resource.to_dict()
        body.pop("status", None)
        body["apiVersion"] = self.api_version
        obj = self._call(f"updating {resource.KIND} {resource.namespace}/{resource.name}",
                         self.custom.replace_namespaced_custom_object,
                         self.group, self.version, resource.namespace, resource.PLURAL, resource.name, body)
        return type(resource).from_dict(obj)

    def patch_status(self, resource: Resource) -> Resource:
        """Merge-patch the status, conditional on the resourceVersion the record was read at"""
        body = {
            "metadata": {"resourceVersion": resource.metadata.resource_version},
            "status": resource.status.to_dict(),
        }
        obj = self._call(f"patching status of {resource.KIND} {resource.namespace}/{resource.name}",
                         self.custom.patch_namespaced_custom_object_status,
                         self.group, self.version, resource.namespace, resource.PLURAL, resource.name, body)
        return type(resource).from_dict(obj)

    # ------------------------------------------------------------------------
    # secrets
    # ------------------------------------------------------------------------

    def _to_secret(self, obj) -> Secret:
        meta = obj.metadata
        return Secret(
            name=meta.name,
            namespace=meta.namespace,
            data=_decode(obj.data),
            labels=dict(meta.labels or {}),
            owner_references=[self.v1.api_client.sanitize_for_serialization(ref)
                              for ref in (meta.owner_references or [])],
        )

    def _to_body(self, secret: Secret) -> client.V1Secret:
        return client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=secret.name,
                namespace=secret.namespace,
                labels=secret.labels or None,
                owner_references=[
                    client.V1OwnerReference(
                        api_version=ref["apiVersion"], kind=ref["kind"], name=ref["name"], uid=ref["uid"],
                        controller=ref.get("controller"), block_owner_deletion=ref.get("blockOwnerDeletion"),
                    ) for ref in secret.owner_references
                ] or None,
            ),
            type="Opaque",
            data=_encode(secret.data),
        )

    def get_secret(self, namespace: str, name: str) -> Optional[Secret]:
        try:
            obj = self._call(f"fetching secret {namespace}/{name}", self.v1.read_namespaced_secret, name, namespace)
        except NotFoundError:
            return None
        return self._to_secret(obj)

    def list_secrets(self, namespace: str, label_selector: str = None) -> List[Secret]:
        kwargs = {"label_selector": label_selector} if label_selector else {}
        result = self._call(f"listing secrets in {namespace}", self.v1.list_namespaced_secret, namespace, **kwargs)
        return [self._to_secret(obj) for obj in result.items]

    def create_secret(self, secret: Secret):
        self._call(f"creating secret {secret.namespace}/{secret.name}",
                   self.v1.create_namespaced_secret, secret.namespace, self._to_body(secret))

    def replace_secret(self, secret: Secret):
        self._call(f"replacing secret {secret.namespace}/{secret.name}",
                   self.v1.replace_namespaced_secret, secret.name, secret.namespace, self._to_body(secret))

    def delete_secret(self, namespace: str, name: str):
        try:
            self._call(f"deleting secret {namespace}/{name}", self.v1.delete_namespaced_secret, name, namespace)
        except NotFoundError:
            pass

    # ------------------------------------------------------------------------
    # events
    # ------------------------------------------------------------------------

    def emit_event(self, resource: Resource, event_type: str, reason: str, message: str):
        now = datetime.now(timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{resource.name}.", namespace=resource.namespace),
            involved_object=client.V1ObjectReference(
                api_version=self.api_version,
                kind=resource.KIND,
                name=resource.name,
                namespace=resource.namespace,
                uid=resource.metadata.uid,
                resource_version=resource.metadata.resource_version,
            ),
            reason=reason,
            message=message,
            type=event_type,
            count=1,
            first_timestamp=now,
            last_timestamp=now,
            source=client.V1EventSource(component=Config.EVENT_COMPONENT),
        )
        self._call(f"emitting event on {resource.namespace}/{resource.name}",
                   self.v1.create_namespaced_event, resource.namespace, event)
