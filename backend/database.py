from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None
    
    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")
            
            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise
    
    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")
    
    def get_db(self):
        return self.db
    
    async def _create_indexes(self):
        """Create MongoDB indexes for billing lookups and idempotency."""
        try:
            # Accounts - webhooks locate the account by Stripe customer id
            await self.db.users.create_index("user_id", unique=True)
            await self.db.users.create_index("stripe_customer_id", sparse=True)
            await self.db.users.create_index("stripe_subscription_id", sparse=True)
            await self.db.users.create_index("referral_code", sparse=True)
            # Convergence job scans due pending downgrades
            await self.db.users.create_index([("pending_plan", 1), ("pending_plan_effective_date", 1)])
            
            # Price overrides - _id is the (mode, plan) key; reverse lookup by price
            await self.db.stripe_price_overrides.create_index("price_id")
            
            # Stripe webhook idempotency - duplicate event_id must not process twice
            try:
                await self.db.stripe_events.create_index("event_id", unique=True)
            except Exception:
                pass
            await self.db.stripe_events.create_index([("status", 1), ("created", -1)])
            
            await self.db.plan_change_events.create_index([("user_id", 1), ("changed_at", -1)])
            await self.db.notifications.create_index([("user_id", 1), ("created_at", -1)])
            await self.db.admin_alerts.create_index([("resolved", 1), ("created_at", -1)])
            
            # Admin dashboard - failed payments by type/time, renewals by due date
            await self.db.billing_events.create_index([("type", 1), ("created_at", -1)])
            await self.db.billing_events.create_index("due_at", sparse=True)
            
            # One referral record per (referrer, referee); the reward flips exactly once
            try:
                await self.db.referrals.create_index([("referrer_id", 1), ("referee_id", 1)], unique=True)
            except Exception:
                pass
            
            await self.db.audit_logs.create_index([("user_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            await self.db.message_logs.create_index([("created_at", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

