from enum import Enum


class TransactionType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    DIVIDEND = "DIVIDEND"
    RETURN_OF_CAPITAL = "RETURN_OF_CAPITAL"


class ReturnOfCapitalPolicy(str, Enum):
    """How a return of capital reduces cost basis.

    AGGREGATE_ONLY lowers Holding.total_cost and parks the amount as unallocated
    return of capital; lots keep their acquisition cost and each later sell
    releases a share of the unallocated amount in proportion to the lot cost it
    consumes.
    PRO_RATA_LOTS also allocates the reduction across open lots by remaining cost,
    so later FIFO sells consume the reduced basis.
    """

    AGGREGATE_ONLY = "AGGREGATE_ONLY"
    PRO_RATA_LOTS = "PRO_RATA_LOTS"
