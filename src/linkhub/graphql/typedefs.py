"""
GraphQL type definitions served by the gateway.
"""

TYPE_DEFS = '''
"""A saved link with its catalogue metadata."""
type Link {
  id: String
  title: String
  description: String
  url: String
  category: String
  imageUrl: String
  users: [String]
  createdAt: String
  updatedAt: String
}

"""A change to one link, published after a successful mutation."""
type LinkEvent {
  "created or deleted"
  kind: String!
  link: Link
  at: String!
}

type Query {
  links: [Link]
  link(id: String!): Link
}

type Mutation {
  createLink(
    title: String!
    url: String!
    description: String
    category: String
    imageUrl: String
    users: [String]
  ): Link
  deleteLink(id: String!): Link
}

type Subscription {
  "Current list of links, re-sent after every change"
  links: [Link]
  linkEvents: LinkEvent
}
'''
