"""Bash bodies for install steps.

Each script is assembled as: variable prelude, common functions, body,
installed-marker footer. Values reach bash only through the prelude,
quoted with shlex.quote, so bodies contain no Python interpolation.
"""

import shlex

STATE_DIR = '/var/lib/testbed/state'
REBOOT_MARKER = 'TESTBED_REBOOT=1'

CNI_PLUGINS_VERSION = 'v1.5.1'
CRICTL_VERSION = 'v1.31.1'
CALICO_VERSION = 'v3.28.1'
KUBELET_RELEASE_VERSION = 'v0.17.2'
KIND_VERSION = 'v0.24.0'
POD_NETWORK_CIDR = '192.168.0.0/16'

COMMON_FUNCTIONS = r'''
export DEBIAN_FRONTEND=noninteractive
STATE_DIR="__STATE_DIR__"
sudo mkdir -p "$STATE_DIR"

if command -v cloud-init &>/dev/null; then
    echo "[testbed] Waiting for cloud-init to complete..."
    /usr/bin/cloud-init status --wait || true
fi

testbed_mark() {
    printf 'status=%s\nversion=%s\nupdated_at=%s\n' "$2" "$3" "$(date -Iseconds)" | \
        sudo tee "${STATE_DIR}/$1.state" > /dev/null
}

with_retry() {
    local max_attempts="$1" delay="$2" count=0 rc
    shift 2
    while true; do
        set +e
        "$@"
        rc="$?"
        set -e
        count="$((count+1))"
        if [[ "$rc" -eq 0 ]]; then
            return 0
        fi
        if [[ "$count" -ge "$max_attempts" ]]; then
            echo "Failed after ${max_attempts} attempts: $*" >&2
            return 1
        fi
        sleep "$delay"
    done
}

install_packages_with_retry() {
    local i
    for ((i=1; i<=5; i++)); do
        if sudo apt-get -o Acquire::Retries=3 update && \
           sudo apt-get install -y --no-install-recommends "$@"; then
            return 0
        fi
        echo "Attempt $i failed; sleeping 5s" >&2
        sleep 5
    done
    return 1
}

echo "[testbed] Installing ${COMPONENT}"
'''.replace('__STATE_DIR__', STATE_DIR)

MARK_INSTALLED = r'''
testbed_mark "$COMPONENT" installed "$VERSION"
echo "[testbed] ${COMPONENT} installed"
'''

KERNEL = r'''
CURRENT_KERNEL=$(uname -r)
if [[ "$CURRENT_KERNEL" != "$VERSION" ]]; then
    echo "Upgrading kernel from ${CURRENT_KERNEL} to ${VERSION}"
    export EDITOR=/bin/true
    sudo apt-get update -y || true
    sudo apt-get install --allow-downgrades -y \
        "linux-image-${VERSION}" "linux-headers-${VERSION}" "linux-modules-${VERSION}"
    sudo update-grub || true
    sudo update-initramfs -u -k "$VERSION" || true
    testbed_mark "$COMPONENT" installed "$VERSION"
    echo "__REBOOT__"
    nohup bash -c 'sleep 2; sudo reboot' > /dev/null 2>&1 &
    exit 0
fi
echo "Kernel ${VERSION} already running"
'''.replace('__REBOOT__', REBOOT_MARKER)

NVIDIA_DRIVER = r'''
install_packages_with_retry "linux-headers-$(uname -r)" wget
distribution=$(. /etc/os-release; echo "$ID$VERSION_ID" | sed -e 's/\.//g')
wget -q "https://developer.download.nvidia.com/compute/cuda/repos/${distribution}/x86_64/cuda-keyring_1.1-1_all.deb"
sudo dpkg -i cuda-keyring_1.1-1_all.deb
PACKAGE=cuda-drivers
if [[ -n "$VERSION" ]]; then
    PACKAGE="cuda-drivers=${VERSION}"
elif [[ -n "$BRANCH" ]]; then
    PACKAGE="cuda-drivers-${BRANCH}"
fi
install_packages_with_retry "$PACKAGE"
nvidia-smi
'''

DOCKER_APT_REPO = r'''
install_packages_with_retry ca-certificates curl gnupg
sudo install -m 0755 -d /etc/apt/keyrings
curl -fsSL https://download.docker.com/linux/ubuntu/gpg | sudo gpg --dearmor --yes -o /etc/apt/keyrings/docker.gpg
sudo chmod a+r /etc/apt/keyrings/docker.gpg
echo "deb [arch=$(dpkg --print-architecture) signed-by=/etc/apt/keyrings/docker.gpg] https://download.docker.com/linux/ubuntu $(. /etc/os-release && echo "$VERSION_CODENAME") stable" | \
    sudo tee /etc/apt/sources.list.d/docker.list > /dev/null
'''

CONTAINERD = DOCKER_APT_REPO + r'''
if [[ -n "$VERSION" ]]; then
    install_packages_with_retry "containerd.io=${VERSION}-1"
else
    install_packages_with_retry containerd.io
fi
sudo mkdir -p /etc/containerd
containerd config default | sudo tee /etc/containerd/config.toml > /dev/null
sudo sed -i 's/SystemdCgroup = false/SystemdCgroup = true/g' /etc/containerd/config.toml
sudo systemctl restart containerd
sudo systemctl enable containerd
'''

DOCKER = DOCKER_APT_REPO + r'''
if [[ -z "$VERSION" || "$VERSION" == "latest" ]]; then
    install_packages_with_retry docker-ce docker-ce-cli containerd.io
else
    install_packages_with_retry "docker-ce=${VERSION}" "docker-ce-cli=${VERSION}" containerd.io
fi
sudo mkdir -p /etc/docker /etc/systemd/system/docker.service.d
sudo tee /etc/docker/daemon.json > /dev/null <<EOF
{
  "exec-opts": ["native.cgroupdriver=systemd"],
  "log-driver": "json-file",
  "log-opts": {"max-size": "100m"},
  "storage-driver": "overlay2"
}
EOF
sudo systemctl daemon-reload
sudo systemctl enable docker
sudo systemctl restart docker
sudo usermod -aG docker "$USER" || true
'''

CRIO = r'''
: "${VERSION:=v1.31}"
install_packages_with_retry curl gnupg
sudo install -m 0755 -d /etc/apt/keyrings
curl -fsSL "https://pkgs.k8s.io/addons:/cri-o:/stable:/${VERSION}/deb/Release.key" | \
    sudo gpg --dearmor --yes -o /etc/apt/keyrings/cri-o-apt-keyring.gpg
echo "deb [signed-by=/etc/apt/keyrings/cri-o-apt-keyring.gpg] https://pkgs.k8s.io/addons:/cri-o:/stable:/${VERSION}/deb/ /" | \
    sudo tee /etc/apt/sources.list.d/cri-o.list > /dev/null
install_packages_with_retry cri-o
sudo systemctl daemon-reload
sudo systemctl enable --now crio.service
'''

CONTAINER_TOOLKIT = r'''
curl -fsSL https://nvidia.github.io/libnvidia-container/gpgkey | \
    sudo gpg --dearmor --yes -o /usr/share/keyrings/nvidia-container-toolkit-keyring.gpg
curl -s -L https://nvidia.github.io/libnvidia-container/stable/deb/nvidia-container-toolkit.list | \
    sed 's#deb https://#deb [signed-by=/usr/share/keyrings/nvidia-container-toolkit-keyring.gpg] https://#g' | \
    sudo tee /etc/apt/sources.list.d/nvidia-container-toolkit.list > /dev/null
if [[ -n "$VERSION" ]]; then
    install_packages_with_retry "nvidia-container-toolkit=${VERSION}" "nvidia-container-toolkit-base=${VERSION}"
else
    install_packages_with_retry nvidia-container-toolkit
fi
sudo nvidia-ctk runtime configure --runtime="$RUNTIME" --set-as-default
if [[ "$ENABLE_CDI" == "true" ]]; then
    sudo mkdir -p /etc/cdi
    sudo nvidia-ctk cdi generate --output=/etc/cdi/nvidia.yaml
    sudo nvidia-ctk config --in-place --set nvidia-container-runtime.mode=cdi
fi
sudo systemctl restart "$RUNTIME"
'''

KUBE_PREREQUISITES = r'''
sudo swapoff -a
sudo sed -i '/ swap / s/^\(.*\)$/#\1/g' /etc/fstab
printf 'overlay\nbr_netfilter\n' | sudo tee /etc/modules-load.d/k8s.conf > /dev/null
sudo modprobe overlay
sudo modprobe br_netfilter
printf 'net.bridge.bridge-nf-call-ip6tables = 1\nnet.bridge.bridge-nf-call-iptables = 1\nnet.ipv4.ip_forward = 1\n' | \
    sudo tee /etc/sysctl.d/kubernetes.conf > /dev/null
sudo sysctl --system > /dev/null

ARCH=$(dpkg --print-architecture)
sudo mkdir -p /opt/cni/bin
if [[ ! -f /opt/cni/bin/bridge ]]; then
    curl -fsSL "https://github.com/containernetworking/plugins/releases/download/${CNI_PLUGINS_VERSION}/cni-plugins-linux-${ARCH}-${CNI_PLUGINS_VERSION}.tgz" | \
        sudo tar -C /opt/cni/bin -xz
fi
DOWNLOAD_DIR=/usr/local/bin
if [[ ! -f "$DOWNLOAD_DIR/crictl" ]]; then
    curl -fsSL "https://github.com/kubernetes-sigs/cri-tools/releases/download/${CRICTL_VERSION}/crictl-${CRICTL_VERSION}-linux-${ARCH}.tar.gz" | \
        sudo tar -C "$DOWNLOAD_DIR" -xz
fi
for bin in kubeadm kubelet kubectl; do
    if [[ ! -f "$DOWNLOAD_DIR/$bin" ]]; then
        sudo curl -fsSL -o "$DOWNLOAD_DIR/$bin" "https://dl.k8s.io/release/${VERSION}/bin/linux/${ARCH}/${bin}"
        sudo chmod +x "$DOWNLOAD_DIR/$bin"
    fi
done
curl -fsSL "https://raw.githubusercontent.com/kubernetes/release/${KUBELET_RELEASE_VERSION}/cmd/krel/templates/latest/kubelet/kubelet.service" | \
    sed "s:/usr/bin:${DOWNLOAD_DIR}:g" | sudo tee /etc/systemd/system/kubelet.service > /dev/null
sudo mkdir -p /etc/systemd/system/kubelet.service.d
curl -fsSL "https://raw.githubusercontent.com/kubernetes/release/${KUBELET_RELEASE_VERSION}/cmd/krel/templates/latest/kubeadm/10-kubeadm.conf" | \
    sed "s:/usr/bin:${DOWNLOAD_DIR}:g" | sudo tee /etc/systemd/system/kubelet.service.d/10-kubeadm.conf > /dev/null
sudo systemctl daemon-reload
sudo systemctl enable --now kubelet
'''

KUBECONFIG_SETUP = r'''
mkdir -p "$HOME/.kube"
sudo cp -f /etc/kubernetes/admin.conf "$HOME/.kube/config"
sudo chown "$(id -u):$(id -g)" "$HOME/.kube/config"
export KUBECONFIG="$HOME/.kube/config"
'''

CALICO = r'''
with_retry 10 10s kubectl version
if ! kubectl get namespace tigera-operator &>/dev/null; then
    with_retry 3 10s kubectl create -f "https://raw.githubusercontent.com/projectcalico/calico/${CALICO_VERSION}/manifests/tigera-operator.yaml"
fi
with_retry 10 10s kubectl wait --for=condition=available --timeout=300s deployment/tigera-operator -n tigera-operator
if ! kubectl get installations.operator.tigera.io default &>/dev/null; then
    with_retry 3 10s kubectl apply -f "https://raw.githubusercontent.com/projectcalico/calico/${CALICO_VERSION}/manifests/custom-resources.yaml"
fi
'''

KUBEADM_SINGLE_NODE = KUBE_PREREQUISITES + r'''
if [[ ! -f /etc/kubernetes/admin.conf ]]; then
    INIT_ARGS=(--kubernetes-version="$VERSION" --pod-network-cidr="$POD_NETWORK_CIDR" --ignore-preflight-errors=all)
    if [[ -n "$ENDPOINT_HOST" ]]; then
        INIT_ARGS+=(--control-plane-endpoint="${ENDPOINT_HOST}:6443")
    fi
    if [[ -n "$FEATURE_GATES" ]]; then
        INIT_ARGS+=(--feature-gates="$FEATURE_GATES")
    fi
    with_retry 3 10s sudo kubeadm init "${INIT_ARGS[@]}"
fi
''' + KUBECONFIG_SETUP + CALICO + r'''
kubectl taint nodes --all node-role.kubernetes.io/control-plane:NoSchedule- || true
kubectl label node --all node-role.kubernetes.io/worker= --overwrite
'''

KUBEADM_INIT = r'''
if [[ ! -f /etc/kubernetes/admin.conf ]]; then
    INIT_ARGS=(--kubernetes-version="$VERSION" --pod-network-cidr="$POD_NETWORK_CIDR"
               --control-plane-endpoint="${ENDPOINT}:6443" --ignore-preflight-errors=all)
    if [[ "$IS_HA" == "true" ]]; then
        INIT_ARGS+=(--upload-certs)
    fi
    with_retry 3 10s sudo kubeadm init "${INIT_ARGS[@]}"
fi
''' + KUBECONFIG_SETUP + CALICO + r'''
with_retry 10 10s kubectl wait --for=condition=ready --timeout=300s nodes --all
'''

KUBEADM_JOIN = r'''
if [[ -f /etc/kubernetes/kubelet.conf ]]; then
    echo "Node already joined"
else
    JOIN_ARGS=("${ENDPOINT}:6443" --token "$TOKEN" --discovery-token-ca-cert-hash "$CA_CERT_HASH"
               --ignore-preflight-errors=all)
    if [[ "$IS_CONTROL_PLANE" == "true" ]]; then
        JOIN_ARGS+=(--control-plane)
        if [[ -n "$CERTIFICATE_KEY" ]]; then
            JOIN_ARGS+=(--certificate-key "$CERTIFICATE_KEY")
        fi
    fi
    with_retry 3 10s sudo kubeadm join "${JOIN_ARGS[@]}"
fi
if [[ "$IS_CONTROL_PLANE" == "true" ]]; then
''' + KUBECONFIG_SETUP + r'''
fi
'''

KIND = r'''
ARCH=$(dpkg --print-architecture)
if ! command -v kind &>/dev/null; then
    sudo curl -fsSL -o /usr/local/bin/kind "https://kind.sigs.k8s.io/dl/${KIND_VERSION}/kind-linux-${ARCH}"
    sudo chmod +x /usr/local/bin/kind
fi
if ! command -v kubectl &>/dev/null; then
    sudo curl -fsSL -o /usr/local/bin/kubectl "https://dl.k8s.io/release/${VERSION}/bin/linux/${ARCH}/kubectl"
    sudo chmod +x /usr/local/bin/kubectl
fi
if ! sudo kind get clusters 2>/dev/null | grep -qx testbed; then
    KIND_ARGS=(--name testbed --image "kindest/node:${VERSION}")
    if [[ -n "$KIND_CONFIG" ]]; then
        KIND_ARGS+=(--config "$KIND_CONFIG")
    fi
    with_retry 3 10s sudo kind create cluster "${KIND_ARGS[@]}"
fi
mkdir -p "$HOME/.kube"
sudo kind get kubeconfig --name testbed > "$HOME/.kube/config"
'''

MICROK8S = r'''
CHANNEL="${VERSION#v}"
CHANNEL="${CHANNEL%.*}"
if ! command -v microk8s &>/dev/null; then
    with_retry 3 10s sudo snap install microk8s --classic --channel="${CHANNEL}/stable"
fi
sudo microk8s status --wait-ready
sudo microk8s enable gpu dashboard dns registry
sudo usermod -a -G microk8s "$USER"
mkdir -p "$HOME/.kube"
sudo microk8s config > "$HOME/.kube/config"
'''


def build_script(component: str, body: str, version: str = '', **variables) -> str:
    """Assemble a full script for one component."""
    prelude = [
        '#!/usr/bin/env bash',
        'set -eo pipefail',
        f'COMPONENT={shlex.quote(component)}',
        f'VERSION={shlex.quote(version)}',
    ]
    for name, value in variables.items():
        if isinstance(value, bool):
            value = 'true' if value else 'false'
        prelude.append(f'{name}={shlex.quote(str(value))}')
    return '\n'.join(prelude) + '\n' + COMMON_FUNCTIONS + body + MARK_INSTALLED


def state_file(component: str) -> str:
    return f'{STATE_DIR}/{component}.state'
