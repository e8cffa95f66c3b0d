"""Opinionated EKS stack composer: VPC, bastion, cluster and node groups."""
