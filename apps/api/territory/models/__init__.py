from territory.models.audit import AuditLog
from territory.reconcile.models import (
	Account,
	AccountRevenue,
	ImportStatus,
	Manager,
	OriginalRelationship,
	Profile,
	ReconcileJob,
	ReconcileJobArtifact,
	RelationshipMap,
	Seller,
	SellerChatMessage,
	SellerManager,
	SellerPerformance,
)

__all__ = [
	"AuditLog",
	"Account",
	"AccountRevenue",
	"ImportStatus",
	"Manager",
	"OriginalRelationship",
	"Profile",
	"ReconcileJob",
	"ReconcileJobArtifact",
	"RelationshipMap",
	"Seller",
	"SellerChatMessage",
	"SellerManager",
	"SellerPerformance",
]
