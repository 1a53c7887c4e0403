"""GraphQL documents understood by the pool indexer."""

ACTIVITY_FIELDS = """
        id
        type
        aspStatus
        poolId
        user
        recipient
        amount
        originalAmount
        vettingFeeAmount
        commitment
        label
        precommitmentHash
        spentNullifier
        newCommitment
        feeAmount
        feeRefund
        relayer
        isSponsored
        blockNumber
        timestamp
        transactionHash
"""

GET_ACTIVITIES = """
query GetActivities($poolId: String!, $limit: Int = 100, $after: String, $orderDirection: String = "asc") {
  activitys(
    where: { poolId: $poolId }
    limit: $limit
    after: $after
    orderBy: "timestamp"
    orderDirection: $orderDirection
  ) {
    items {%s}
    pageInfo { hasNextPage endCursor }
  }
}
""" % ACTIVITY_FIELDS

GET_DEPOSIT_BY_PRECOMMITMENT = """
query GetDepositByPrecommitment($precommitmentHash: BigInt!) {
  activitys(where: { precommitmentHash: $precommitmentHash }, limit: 1) {
    items {%s}
  }
}
""" % ACTIVITY_FIELDS

GET_WITHDRAWAL_BY_SPENT_NULLIFIER = """
query FetchWithdrawalBySpentNullifier($spentNullifier: BigInt!) {
  activitys(where: { type: "WITHDRAWAL", spentNullifier: $spentNullifier }, limit: 1) {
    items {%s}
  }
}
""" % ACTIVITY_FIELDS

GET_STATE_TREE_LEAVES = """
query GetStateTreeCommitments($poolId: String!, $limit: Int = 1000, $after: String) {
  merkleTreeLeafs(
    where: { poolId: $poolId }
    limit: $limit
    after: $after
    orderBy: "leafIndex"
    orderDirection: "asc"
  ) {
    items { leafIndex leafValue }
    pageInfo { hasNextPage endCursor }
  }
}
"""

GET_LATEST_ASP_ROOT = """
query GetLatestAspRoot {
  associationSetUpdates(orderBy: "timestamp", orderDirection: "desc", limit: 1) {
    items { root ipfsCID timestamp }
  }
}
"""

GET_POOL_STATS = """
query GetPoolStats($poolId: String!) {
  pool(id: $poolId) { totalDeposits totalWithdrawals memberCount createdAt }
}
"""

HEALTH_CHECK = """
query HealthCheck {
  _meta { status }
}
"""
