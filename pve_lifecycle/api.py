"""
Proxmox VE control-plane client.

ProxmoxAPI is the thin HTTP layer (ticket or API token authentication,
JSON envelope unwrapping). ProxmoxClient exposes the VM and snapshot
operations the lifecycle components call, and waits for the asynchronous
task every mutating Proxmox call starts.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import requests
import urllib3

from pve_lifecycle.exceptions import OperationError, VMNotFoundError
from pve_lifecycle.models import VM, GuestToolsStatus, PowerState, Snapshot

logger = logging.getLogger(__name__)

# qmpstatus values reported for a running process whose guest is not executing
PAUSED_QMP_STATES = ('paused', 'suspended', 'prelaunch')


class ProxmoxAPIError(OperationError):
    """A call to the Proxmox REST API failed or returned an error payload."""
    def __init__(self, message: str, status_code: Optional[int] = None, response_data: Optional[Dict] = None):
        self.status_code = status_code
        self.response_data = response_data
        super().__init__(message)


class ProxmoxAPI:
    """HTTP session against ``/api2/json`` that unwraps the ``data`` envelope."""

    # seconds, per HTTP method
    TIMEOUTS = {'GET': 30, 'DELETE': 30, 'POST': 60, 'PUT': 60}
    LOGIN_TIMEOUT = 10

    def __init__(self, host: str, user: str, password: Optional[str] = None, token_name: Optional[str] = None,
                 token_value: Optional[str] = None, verify_ssl: bool = False, port: int = 8006):
        self.host = host
        self.user = user
        self.port = port
        self.verify_ssl = verify_ssl
        self.base_url = f"https://{host}:{port}/api2/json"

        self.session = requests.Session()
        self.session.verify = verify_ssl
        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        if token_name and token_value:
            self.session.headers.update({'Authorization': f'PVEAPIToken={user}!{token_name}={token_value}'})
        elif password:
            self._login(password)
        else:
            raise ProxmoxAPIError(f"No password or API token given for {user}@{host}")

    def _login(self, password: str):
        """Exchange the password for a ticket cookie and CSRF token."""
        try:
            response = self.session.request('POST', f"{self.base_url}/access/ticket",
                                            data={'username': self.user, 'password': password},
                                            timeout=self.LOGIN_TIMEOUT)
            response.raise_for_status()
            ticket = (response.json() or {}).get('data')
        except requests.exceptions.RequestException as e:
            raise ProxmoxAPIError(f"Authentication failed for {self.user}@{self.host}: {e}")
        except ValueError:
            raise ProxmoxAPIError(f"Authentication failed for {self.user}@{self.host}: invalid response")

        if not ticket:
            raise ProxmoxAPIError(f"Authentication failed for {self.user}@{self.host}: no ticket received")
        self.session.headers.update({
            'Cookie': f"PVEAuthCookie={ticket['ticket']}",
            'CSRFPreventionToken': ticket['CSRFPreventionToken'],
        })

    def _request(self, method: str, path: str, data: Optional[Dict] = None,
                 params: Optional[Dict] = None) -> Any:
        method = method.upper()
        if method not in self.TIMEOUTS:
            raise ProxmoxAPIError(f"Unsupported HTTP method: {method}")

        url = urljoin(self.base_url + '/', path.lstrip('/'))
        try:
            response = self.session.request(method, url, data=data, params=params,
                                            timeout=self.TIMEOUTS[method])
        except requests.exceptions.Timeout:
            raise ProxmoxAPIError(f"Request timeout for {method} {path}")
        except requests.exceptions.RequestException as e:
            raise ProxmoxAPIError(f"{method} {path} failed: {e}")

        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            payload = _json_or_empty(response)
            detail = payload.get('errors') or payload.get('message') or str(e)
            raise ProxmoxAPIError(f"{method} {path} failed: {detail}", response.status_code, payload)

        result = _json_or_empty(response)
        return result['data'] if 'data' in result else result

    def close(self):
        """Drop the HTTP session; the ticket is left to expire server side."""
        self.session.close()


def _json_or_empty(response) -> Dict:
    if not response.content:
        return {}
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {'data': payload}


class ProxmoxClient:
    """VM and snapshot operations against a Proxmox VE host or cluster."""

    # Proxmox snapshot ids must start with a letter; timestamp names do not.
    SNAPSHOT_PREFIX = 'lab-'

    def __init__(self, api: ProxmoxAPI, task_timeout: float = 300, poll_interval: float = 2):
        self.api = api
        self.task_timeout = task_timeout
        self.poll_interval = poll_interval
        self._inventory: Optional[List[VM]] = None
        self._inventory_lock = threading.Lock()

    @classmethod
    def connect(cls, host: str, user: str, password: str = None, token_name: str = None,
                token_value: str = None, port: int = 8006, verify_ssl: bool = False,
                task_timeout: float = 300) -> 'ProxmoxClient':
        """Log in to a Proxmox host and return a ready client."""
        logger.debug("Connecting to %s:%s as %s", host, port, user)
        api = ProxmoxAPI(host, user, password=password, token_name=token_name,
                         token_value=token_value, verify_ssl=verify_ssl, port=port)
        return cls(api, task_timeout=task_timeout)

    @property
    def host(self) -> str:
        return self.api.host

    def disconnect(self):
        logger.debug("Disconnecting from %s", self.api.host)
        self.api.close()

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def get_nodes(self) -> List[Dict]:
        """Get all nodes in the cluster."""
        return self.api._request('GET', '/nodes') or []

    def list_vms(self, refresh: bool = False) -> List[VM]:
        """Get all VMs from all nodes, in the order the API returns them.

        The inventory is fetched once per client and reused by ``get_vm``;
        pass ``refresh=True`` to query the nodes again.
        """
        with self._inventory_lock:
            if self._inventory is None or refresh:
                self._inventory = self._fetch_vms()
            return list(self._inventory)

    def _fetch_vms(self) -> List[VM]:
        all_vms = []

        for node in self.get_nodes():
            node_name = node['node']
            try:
                vms = self.api._request('GET', f'/nodes/{node_name}/qemu') or []
            except ProxmoxAPIError as e:
                logger.warning("Could not get VMs from node %s: %s", node_name, e.message)
                continue

            for vm in vms:
                if vm.get('template'):
                    continue
                vmid = str(vm['vmid'])
                all_vms.append(VM(name=vm.get('name', f'vm-{vmid}'), vmid=vmid, node=node_name))

        return all_vms

    def get_vm(self, identifier: str) -> VM:
        """Find a VM by exact name, then case-insensitive name, then VM ID."""
        all_vms = self.list_vms()

        for matches in ([vm for vm in all_vms if vm.name == identifier],
                        [vm for vm in all_vms if vm.name.lower() == identifier.lower()]):
            if len(matches) > 1:
                logger.warning("Name %s matches VMs %s, using %s", identifier,
                               ', '.join(vm.vmid for vm in matches), matches[0].vmid)
            if matches:
                return matches[0]

        for vm in all_vms:
            if vm.vmid == identifier:
                return vm

        raise VMNotFoundError(identifier)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _vm_path(self, vm: VM) -> str:
        return f'/nodes/{vm.node}/qemu/{vm.vmid}'

    def _status(self, vm: VM) -> Dict:
        return self.api._request('GET', f'{self._vm_path(vm)}/status/current') or {}

    def power_state(self, vm: VM) -> PowerState:
        status = self._status(vm)

        if status.get('status') == 'running':
            if status.get('qmpstatus') in PAUSED_QMP_STATES:
                return PowerState.SUSPENDED
            return PowerState.POWERED_ON

        # Hibernated VMs are stopped with the state held in a suspend lock
        if status.get('lock') == 'suspended':
            return PowerState.SUSPENDED
        return PowerState.POWERED_OFF

    def guest_tools_status(self, vm: VM) -> GuestToolsStatus:
        config = self.api._request('GET', f'{self._vm_path(vm)}/config') or {}
        if not agent_enabled(config.get('agent')):
            return GuestToolsStatus.NOT_INSTALLED

        try:
            self.api._request('POST', f'{self._vm_path(vm)}/agent/ping')
        except ProxmoxAPIError as e:
            logger.debug("Guest agent on %s not responding: %s", vm, e.message)
            return GuestToolsStatus.NOT_READY
        return GuestToolsStatus.OK

    # ------------------------------------------------------------------
    # Power operations
    # ------------------------------------------------------------------

    def start(self, vm: VM):
        """Start a stopped VM, or resume a paused one."""
        status = self._status(vm)
        if status.get('status') == 'running' and status.get('qmpstatus') in PAUSED_QMP_STATES:
            self._run_task(vm, 'POST', 'status/resume', description='resume')
        else:
            self._run_task(vm, 'POST', 'status/start', description='start')

    def hard_stop(self, vm: VM):
        self._run_task(vm, 'POST', 'status/stop', description='stop')

    def guest_shutdown(self, vm: VM):
        self._run_task(vm, 'POST', 'status/shutdown', description='shutdown')

    def guest_restart(self, vm: VM):
        self._run_task(vm, 'POST', 'status/reboot', description='reboot')

    def suspend(self, vm: VM):
        self._run_task(vm, 'POST', 'status/suspend', description='suspend')

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def list_snapshots(self, vm: VM) -> List[Snapshot]:
        """Get the snapshots of a VM, excluding the 'current' pseudo entry."""
        entries = self.api._request('GET', f'{self._vm_path(vm)}/snapshot') or []
        snapshots = []

        for entry in entries:
            snapshot_id = entry.get('name')
            if not snapshot_id or snapshot_id == 'current':
                continue
            name = snapshot_id
            if name.startswith(self.SNAPSHOT_PREFIX):
                name = name[len(self.SNAPSHOT_PREFIX):]
            created = datetime.fromtimestamp(int(entry.get('snaptime', 0)))
            snapshots.append(Snapshot(name=name, created=created, vm=vm, snapshot_id=snapshot_id))

        return snapshots

    def create_snapshot(self, vm: VM, name: str) -> Snapshot:
        snapshot_id = f'{self.SNAPSHOT_PREFIX}{name}'
        snapshot_data = {
            'snapname': snapshot_id,
            'description': name,
        }
        self._run_task(vm, 'POST', 'snapshot', data=snapshot_data, description=f'snapshot {name}')
        return Snapshot(name=name, created=datetime.now(), vm=vm, snapshot_id=snapshot_id)

    def delete_snapshot(self, snapshot: Snapshot):
        self._run_task(snapshot.vm, 'DELETE', f'snapshot/{snapshot.ref}',
                       description=f'delete snapshot {snapshot.name}')

    def revert_to_snapshot(self, vm: VM, snapshot: Snapshot):
        self._run_task(vm, 'POST', f'snapshot/{snapshot.ref}/rollback',
                       description=f'rollback to {snapshot.name}')

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _run_task(self, vm: VM, method: str, subpath: str, data: Dict = None, description: str = 'task'):
        """Issue a VM call and wait for the task it starts."""
        try:
            task_id = self.api._request(method, f'{self._vm_path(vm)}/{subpath}', data=data)
        except ProxmoxAPIError as e:
            e.vm = vm.name
            e.operation = description
            raise

        if isinstance(task_id, str) and task_id.startswith('UPID:'):
            self.wait_for_task(vm.node, task_id, f'{description} of VM {vm}')

    def wait_for_task(self, node: str, task_id: str, description: str = 'Task'):
        """Monitor a Proxmox task until completion; raise if it does not end OK."""
        start_time = time.time()

        while True:
            task_status = self.api._request('GET', f'/nodes/{node}/tasks/{task_id}/status') or {}
            status = task_status.get('status', 'unknown')

            if status == 'stopped':
                exit_status = task_status.get('exitstatus', '')
                if exit_status == 'OK':
                    logger.debug("%s completed in %.1fs", description, time.time() - start_time)
                    return
                raise ProxmoxAPIError(f"{description} failed: {exit_status}", response_data=task_status)

            if time.time() - start_time > self.task_timeout:
                raise ProxmoxAPIError(f"{description} did not finish within {self.task_timeout:.0f}s "
                                      f"(task {task_id} may still be running)")

            time.sleep(self.poll_interval)


def agent_enabled(value: Optional[str]) -> bool:
    """Interpret the 'agent' VM config option ('1', '0' or 'enabled=1,...')."""
    if value is None:
        return False

    for part in str(value).split(','):
        part = part.strip()
        if '=' in part:
            key, _, val = part.partition('=')
            if key.strip() == 'enabled':
                return val.strip() == '1'
        else:
            return part == '1'
    return False
