"""Type tokens declared by the platform stacks.

The taggable maps are provider-version sensitive: a token only belongs in
them when the provider schema for that version exposes the tag attribute.
``KNOWN_TYPE_TOKENS`` is the registry checked by the acceptance tests; any
new token a stack declares has to be added here first.
"""

# Component tokens owned by this package
COMPONENT_PREFIX = "pulumi-eks-platform"
STACK_ROOT = f"{COMPONENT_PREFIX}:index:MicroStack"
LOAD_BALANCER_LOOKUP = f"{COMPONENT_PREFIX}:aws:LoadBalancerLookup"
IRSA = f"{COMPONENT_PREFIX}:aws:IRSA"
CLUSTER_ADDON = f"{COMPONENT_PREFIX}:eks:ClusterAddon"

# A whole Pulumi stack, as deployed by the cross-stack deployer
PULUMI_STACK = "pulumi:pulumi:Stack"

# Providers
AWS_PROVIDER = "pulumi:providers:aws"
KUBERNETES_PROVIDER = "pulumi:providers:kubernetes"
GCP_PROVIDER = "pulumi:providers:gcp"

# AWS
CLOUDWATCH_LOG_GROUP = "aws:cloudwatch/logGroup:LogGroup"
CLOUDWATCH_METRIC_ALARM = "aws:cloudwatch/metricAlarm:MetricAlarm"
EC2_FLOW_LOG = "aws:ec2/flowLog:FlowLog"
EC2_SECURITY_GROUP = "aws:ec2/securityGroup:SecurityGroup"
EKS_NODE_GROUP = "aws:eks/nodeGroup:NodeGroup"
IAM_POLICY = "aws:iam/policy:Policy"
IAM_ROLE = "aws:iam/role:Role"
IAM_ROLE_POLICY = "aws:iam/rolePolicy:RolePolicy"
IAM_ROLE_POLICY_ATTACHMENT = "aws:iam/rolePolicyAttachment:RolePolicyAttachment"
RDS_INSTANCE = "aws:rds/instance:Instance"
RDS_PARAMETER_GROUP = "aws:rds/parameterGroup:ParameterGroup"
RDS_SUBNET_GROUP = "aws:rds/subnetGroup:SubnetGroup"
ROUTE53_RECORD = "aws:route53/record:Record"

# Multi-language components
AWSX_VPC = "awsx:ec2:Vpc"
EKS_CLUSTER = "eks:index:Cluster"
EKS_MANAGED_NODE_GROUP = "eks:index:ManagedNodeGroup"

# GCP
GCP_NETWORK = "gcp:compute/network:Network"
GCP_SUBNETWORK = "gcp:compute/subnetwork:Subnetwork"
GCP_ROUTER = "gcp:compute/router:Router"
GCP_ROUTER_NAT = "gcp:compute/routerNat:RouterNat"
GKE_CLUSTER = "gcp:container/cluster:Cluster"
GKE_NODE_POOL = "gcp:container/nodePool:NodePool"

# Random
RANDOM_PASSWORD = "random:index/randomPassword:RandomPassword"

# Kubernetes
K8S_NAMESPACE = "kubernetes:core/v1:Namespace"
K8S_SECRET = "kubernetes:core/v1:Secret"
K8S_SERVICE_ACCOUNT = "kubernetes:core/v1:ServiceAccount"
K8S_CONFIG_MAP = "kubernetes:core/v1:ConfigMap"
K8S_SERVICE = "kubernetes:core/v1:Service"
K8S_DEPLOYMENT = "kubernetes:apps/v1:Deployment"
K8S_INGRESS = "kubernetes:networking.k8s.io/v1:Ingress"
K8S_STORAGE_CLASS = "kubernetes:storage.k8s.io/v1:StorageClass"
K8S_CLUSTER_ISSUER = "kubernetes:cert-manager.io/v1:ClusterIssuer"
HELM_RELEASE = "kubernetes:helm.sh/v3:Release"
K8S_CONFIG_FILE = "kubernetes:yaml/v2:ConfigFile"
K8S_CONFIG_GROUP = "kubernetes:yaml/v2:ConfigGroup"
K8S_KUSTOMIZE_DIRECTORY = "kubernetes:kustomize/v2:Directory"

# Components implemented by a provider plugin rather than in this process
REMOTE_COMPONENT_TOKENS = frozenset(
    {
        AWSX_VPC,
        EKS_CLUSTER,
        EKS_MANAGED_NODE_GROUP,
        K8S_CONFIG_FILE,
        K8S_CONFIG_GROUP,
        K8S_KUSTOMIZE_DIRECTORY,
    }
)

AWS_TAGGABLE = {
    token: "tags"
    for token in (
        "aws:cloudwatch/logGroup:LogGroup",
        "aws:cloudwatch/metricAlarm:MetricAlarm",
        "aws:ec2/customerGateway:CustomerGateway",
        "aws:ec2/defaultNetworkAcl:DefaultNetworkAcl",
        "aws:ec2/defaultRouteTable:DefaultRouteTable",
        "aws:ec2/defaultSecurityGroup:DefaultSecurityGroup",
        "aws:ec2/defaultSubnet:DefaultSubnet",
        "aws:ec2/defaultVpc:DefaultVpc",
        "aws:ec2/eip:Eip",
        "aws:ec2/flowLog:FlowLog",
        "aws:ec2/instance:Instance",
        "aws:ec2/internetGateway:InternetGateway",
        "aws:ec2/keyPair:KeyPair",
        "aws:ec2/launchTemplate:LaunchTemplate",
        "aws:ec2/natGateway:NatGateway",
        "aws:ec2/networkAcl:NetworkAcl",
        "aws:ec2/networkInterface:NetworkInterface",
        "aws:ec2/routeTable:RouteTable",
        "aws:ec2/securityGroup:SecurityGroup",
        "aws:ec2/subnet:Subnet",
        "aws:ec2/vpc:Vpc",
        "aws:ec2/vpcEndpoint:VpcEndpoint",
        "aws:eks/cluster:Cluster",
        "aws:eks/nodeGroup:NodeGroup",
        "aws:iam/policy:Policy",
        "aws:iam/role:Role",
        "aws:iam/user:User",
        "aws:lb/loadBalancer:LoadBalancer",
        "aws:lb/targetGroup:TargetGroup",
        "aws:rds/instance:Instance",
        "aws:rds/parameterGroup:ParameterGroup",
        "aws:rds/subnetGroup:SubnetGroup",
        "aws:route53/zone:Zone",
        "aws:s3/bucket:Bucket",
        # Component tags propagate to the children created by the plugin
        "awsx:ec2:Vpc",
        "eks:index:Cluster",
    )
}

GCP_TAGGABLE = {
    "gcp:compute/address:Address": "labels",
    "gcp:compute/disk:Disk": "labels",
    "gcp:compute/instance:Instance": "labels",
    "gcp:container/cluster:Cluster": "resourceLabels",
    "gcp:storage/bucket:Bucket": "labels",
}

TAGGABLE = {**AWS_TAGGABLE, **GCP_TAGGABLE}

KNOWN_TYPE_TOKENS = frozenset(
    {
        STACK_ROOT,
        PULUMI_STACK,
        LOAD_BALANCER_LOOKUP,
        IRSA,
        CLUSTER_ADDON,
        AWS_PROVIDER,
        KUBERNETES_PROVIDER,
        GCP_PROVIDER,
        CLOUDWATCH_LOG_GROUP,
        CLOUDWATCH_METRIC_ALARM,
        EC2_FLOW_LOG,
        EC2_SECURITY_GROUP,
        EKS_NODE_GROUP,
        IAM_POLICY,
        IAM_ROLE,
        IAM_ROLE_POLICY,
        IAM_ROLE_POLICY_ATTACHMENT,
        RDS_INSTANCE,
        RDS_PARAMETER_GROUP,
        RDS_SUBNET_GROUP,
        ROUTE53_RECORD,
        AWSX_VPC,
        EKS_CLUSTER,
        EKS_MANAGED_NODE_GROUP,
        GCP_NETWORK,
        GCP_SUBNETWORK,
        GCP_ROUTER,
        GCP_ROUTER_NAT,
        GKE_CLUSTER,
        GKE_NODE_POOL,
        RANDOM_PASSWORD,
        K8S_NAMESPACE,
        K8S_SECRET,
        K8S_SERVICE_ACCOUNT,
        K8S_CONFIG_MAP,
        K8S_SERVICE,
        K8S_DEPLOYMENT,
        K8S_INGRESS,
        K8S_STORAGE_CLASS,
        K8S_CLUSTER_ISSUER,
        HELM_RELEASE,
        K8S_CONFIG_FILE,
        K8S_CONFIG_GROUP,
        K8S_KUSTOMIZE_DIRECTORY,
    }
)
